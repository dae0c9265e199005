"""
Prometheus metrics for the CRM security layer.

Metrics are declared once at import time in module-level dictionaries,
grouped by the component that records them, and exposed through the
``/metrics`` endpoint registered by the application factory.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

authz_metrics = {
    'decisions_total': Counter(
        'crm_authz_decisions_total',
        'Authorization decisions by outcome',
        ['check', 'decision', 'role']
    ),
}

middleware_metrics = {
    'requests_total': Counter(
        'crm_security_requests_total',
        'Requests processed by the security middleware by terminal step',
        ['step', 'outcome']
    ),
    'pipeline_duration': Histogram(
        'crm_security_pipeline_duration_seconds',
        'Security middleware pipeline processing time',
        ['outcome'],
        buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
    ),
}

rate_limit_metrics = {
    'checks_total': Counter(
        'crm_rate_limit_checks_total',
        'Rate limit checks by operation class and result',
        ['operation', 'result']
    ),
    'store_errors_total': Counter(
        'crm_rate_limit_store_errors_total',
        'Bucket store failures',
        ['store']
    ),
    'evictions_total': Counter(
        'crm_rate_limit_evictions_total',
        'Expired buckets removed by cleanup',
        ['operation']
    ),
}

audit_metrics = {
    'events_total': Counter(
        'crm_audit_events_total',
        'Audit entries recorded by event type and severity',
        ['event_type', 'severity']
    ),
    'write_failures_total': Counter(
        'crm_audit_write_failures_total',
        'Audit entries that could not be persisted',
        ['event_type']
    ),
}

validation_metrics = {
    'attack_patterns_total': Counter(
        'crm_attack_patterns_detected_total',
        'Inputs rejected by the attack-pattern scanner',
        ['category', 'source']
    ),
}


def generate_metrics_output():
    """Return the Prometheus exposition payload and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
