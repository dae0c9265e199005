"""
Security Audit Logging

Structured, severity-tagged audit trail for authentication, authorization,
data-access, security and system events. Entries are immutable once
written: the application appends them to the ``audit_logs`` collection of
the document store and never updates or deletes them (retention is handled
outside the application).

Key Features:
- Closed event-type and severity enumerations
- Specialized wrappers that pre-set severity per event family
- Redaction of detail keys containing password, token, secret or key
- Size bounds: long strings truncated, oversized detail maps replaced by a
  size note, user agents capped
- Store writes retried with tenacity, then swallowed: an audit failure is
  logged and counted but never raised to the caller
- Optional background writes through a thread pool
- Query surface for admin dashboards: filtered log queries, security alerts,
  per-user activity and a weighted risk report

Every entry is also mirrored to the ``security.audit`` structlog logger.
"""

import json
import re
import uuid
from collections import Counter as TallyCounter
from concurrent.futures import Executor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from flask import current_app, has_request_context, request
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from upface_crm.data.store import DataStoreError, DocumentStore
from upface_crm.monitoring.metrics import audit_metrics

logger = structlog.get_logger(__name__)
audit_log = structlog.get_logger('security.audit')


class AuditEventType(str, Enum):
    # Authentication
    LOGIN_SUCCESS = 'login_success'
    LOGIN_FAILED = 'login_failed'
    LOGOUT = 'logout'
    PASSWORD_CHANGE = 'password_change'
    PASSWORD_RESET = 'password_reset'

    # Authorization and user management
    ROLE_CHANGED = 'role_changed'
    PERMISSION_GRANTED = 'permission_granted'
    PERMISSION_REVOKED = 'permission_revoked'
    USER_ACTIVATED = 'user_activated'
    USER_DEACTIVATED = 'user_deactivated'
    USER_UPDATED = 'user_updated'

    # Data access
    CLIENT_VIEWED = 'client_viewed'
    CLIENT_CREATED = 'client_created'
    CLIENT_UPDATED = 'client_updated'
    CLIENT_DELETED = 'client_deleted'
    CLIENT_ASSIGNED = 'client_assigned'
    TASK_VIEWED = 'task_viewed'
    TASK_CREATED = 'task_created'
    TASK_UPDATED = 'task_updated'
    TASK_DELETED = 'task_deleted'
    TASK_COMMENTED = 'task_commented'
    INQUIRY_SUBMITTED = 'inquiry_submitted'
    INQUIRY_CONVERTED = 'inquiry_converted'
    INTERACTION_CREATED = 'interaction_created'
    TRAINING_ACCESSED = 'training_accessed'
    TRAINING_COMPLETED = 'training_completed'

    # Administrative access
    ADMIN_PANEL_ACCESS = 'admin_panel_access'
    USER_MANAGEMENT_ACCESS = 'user_management_access'
    PERMISSIONS_VIEWED = 'permissions_viewed'
    API_REQUEST = 'api_request'

    # Security
    UNAUTHORIZED_ACCESS_ATTEMPT = 'unauthorized_access_attempt'
    RATE_LIMIT_EXCEEDED = 'rate_limit_exceeded'
    SUSPICIOUS_ACTIVITY = 'suspicious_activity'
    CSRF_TOKEN_INVALID = 'csrf_token_invalid'
    INPUT_VALIDATION_FAILED = 'input_validation_failed'

    # System
    SYSTEM_ERROR = 'system_error'
    DATA_EXPORT = 'data_export'
    BULK_OPERATION = 'bulk_operation'


class AuditSeverity(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


RISK_WEIGHTS = {
    AuditSeverity.CRITICAL: 10,
    AuditSeverity.HIGH: 5,
    AuditSeverity.MEDIUM: 2,
    AuditSeverity.LOW: 1,
}

DATA_ACCESS_EVENTS = frozenset({
    AuditEventType.CLIENT_VIEWED,
    AuditEventType.CLIENT_CREATED,
    AuditEventType.CLIENT_UPDATED,
    AuditEventType.CLIENT_DELETED,
    AuditEventType.CLIENT_ASSIGNED,
    AuditEventType.TASK_VIEWED,
    AuditEventType.TASK_CREATED,
    AuditEventType.TASK_UPDATED,
    AuditEventType.TASK_DELETED,
    AuditEventType.TASK_COMMENTED,
    AuditEventType.INQUIRY_CONVERTED,
    AuditEventType.INTERACTION_CREATED,
    AuditEventType.TRAINING_ACCESSED,
    AuditEventType.DATA_EXPORT,
})

SECURITY_EVENTS = frozenset({
    AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
    AuditEventType.RATE_LIMIT_EXCEEDED,
    AuditEventType.SUSPICIOUS_ACTIVITY,
    AuditEventType.CSRF_TOKEN_INVALID,
    AuditEventType.INPUT_VALIDATION_FAILED,
})

_LOG_METHODS = {
    AuditSeverity.LOW: 'info',
    AuditSeverity.MEDIUM: 'warning',
    AuditSeverity.HIGH: 'error',
    AuditSeverity.CRITICAL: 'critical',
}


class AuditConfig:
    """Bounds applied to every entry before it is written."""

    COLLECTION = 'audit_logs'
    REDACTED = '[REDACTED]'
    TRUNCATION_MARKER = '...[TRUNCATED]'
    SENSITIVE_KEY_PATTERN = re.compile(r'password|token|secret|key', re.IGNORECASE)
    MAX_STRING_LENGTH = 500
    MAX_DETAILS_SIZE = 10000
    MAX_USER_AGENT_LENGTH = 500
    MAX_IP_LENGTH = 64
    MAX_ACTION_LENGTH = 500
    MAX_ERROR_LENGTH = 1000
    DEFAULT_QUERY_LIMIT = 100
    MAX_QUERY_LIMIT = 10000
    WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable audit record."""

    id: str
    timestamp: datetime
    event_type: str
    severity: str
    action: str
    success: bool
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_role: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'AuditLogEntry':
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in document.items() if k in known})


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if len(value) <= limit else value[:limit]


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: AuditConfig.REDACTED
            if AuditConfig.SENSITIVE_KEY_PATTERN.search(str(key)) else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str) and len(value) > AuditConfig.MAX_STRING_LENGTH:
        return value[:AuditConfig.MAX_STRING_LENGTH] + AuditConfig.TRUNCATION_MARKER
    return value


def sanitize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Redact sensitive keys and bound the size of an entry's detail map.

    Keys matching ``password|token|secret|key`` (at any depth) are replaced
    by ``[REDACTED]``; strings over 500 characters are cut with a marker.
    A map still larger than 10000 serialized characters is replaced by a
    note carrying its original size.
    """
    if not details:
        return {}
    cleaned = _redact(details)
    serialized = json.dumps(cleaned, default=str)
    if len(serialized) > AuditConfig.MAX_DETAILS_SIZE:
        return {
            'note': 'Details truncated due to size limit',
            'original_size': len(serialized),
        }
    return cleaned


def _value(item: Any) -> Optional[str]:
    if item is None:
        return None
    return item.value if isinstance(item, Enum) else str(item)


class AuditLogger:
    """
    Append-only audit logger over a document store.

    Args:
        store: Document store receiving entries
        executor: Optional executor for background writes; when given,
            ``log`` returns as soon as the write is submitted
        retry_wait: Base delay in seconds for the exponential write backoff
    """

    def __init__(
        self,
        store: DocumentStore,
        executor: Optional[Executor] = None,
        retry_wait: float = 0.05
    ):
        self.store = store
        self.executor = executor
        self.retry_wait = retry_wait

    def init_app(self, app) -> None:
        app.extensions['audit_logger'] = self

    def _origin(self, ip_address: Optional[str], user_agent: Optional[str]):
        if has_request_context():
            ip_address = ip_address or request.remote_addr
            user_agent = user_agent or request.headers.get('User-Agent')
        return (
            _truncate(ip_address, AuditConfig.MAX_IP_LENGTH),
            _truncate(user_agent, AuditConfig.MAX_USER_AGENT_LENGTH),
        )

    def build_entry(
        self,
        event_type: AuditEventType,
        action: str,
        severity: AuditSeverity = AuditSeverity.LOW,
        success: bool = True,
        actor: Any = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        user_role: Any = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> AuditLogEntry:
        """Assemble a bounded, redacted entry without writing it."""
        if actor is not None:
            user_id = user_id or getattr(actor, 'id', None)
            user_email = user_email or getattr(actor, 'email', None)
            user_role = user_role or getattr(actor, 'role', None)
        ip_address, user_agent = self._origin(ip_address, user_agent)

        return AuditLogEntry(
            id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            event_type=AuditEventType(_value(event_type)).value,
            severity=AuditSeverity(_value(severity)).value,
            action=_truncate(action, AuditConfig.MAX_ACTION_LENGTH) or '',
            success=bool(success),
            user_id=user_id,
            user_email=user_email,
            user_role=_value(user_role),
            ip_address=ip_address,
            user_agent=user_agent,
            resource=resource,
            resource_id=resource_id,
            details=sanitize_details(details),
            error_message=_truncate(error_message, AuditConfig.MAX_ERROR_LENGTH),
        )

    def log(self, event_type: AuditEventType, action: str, **kwargs) -> str:
        """
        Write one audit entry.

        Args:
            event_type: Audit event type
            action: Human-readable description of what happened
            **kwargs: Any ``build_entry`` field (severity, success, actor,
                resource, resource_id, details, error_message ...)

        Returns:
            The entry id, or an empty string when the entry could not be
            written. Never raises.
        """
        try:
            entry = self.build_entry(event_type, action, **kwargs)
        except Exception as e:
            logger.error("Audit entry could not be built", event_type=_value(event_type),
                         error=str(e))
            audit_metrics['write_failures_total'].labels(event_type=_value(event_type)).inc()
            return ''

        self._mirror(entry)
        if self.executor is not None:
            self.executor.submit(self._persist, entry)
            return entry.id
        return entry.id if self._persist(entry) else ''

    def _mirror(self, entry: AuditLogEntry) -> None:
        audit_metrics['events_total'].labels(
            event_type=entry.event_type, severity=entry.severity
        ).inc()
        emit = getattr(audit_log, _LOG_METHODS.get(AuditSeverity(entry.severity), 'info'))
        emit(
            entry.action,
            audit_id=entry.id,
            event_type=entry.event_type,
            severity=entry.severity,
            success=entry.success,
            user_id=entry.user_id,
            user_role=entry.user_role,
            ip_address=entry.ip_address,
            resource=entry.resource,
            resource_id=entry.resource_id,
        )

    def _persist(self, entry: AuditLogEntry) -> bool:
        retrying = Retrying(
            stop=stop_after_attempt(AuditConfig.WRITE_ATTEMPTS),
            wait=wait_exponential(multiplier=self.retry_wait, max=1),
            retry=retry_if_exception_type(DataStoreError),
            reraise=True,
        )
        try:
            retrying(self.store.insert, AuditConfig.COLLECTION, entry.to_document())
            return True
        except Exception as e:
            # Availability over completeness: audit failures never reach callers
            audit_metrics['write_failures_total'].labels(event_type=entry.event_type).inc()
            logger.error(
                "Failed to persist audit entry",
                audit_id=entry.id,
                event_type=entry.event_type,
                error=str(e),
            )
            return False

    def log_auth(
        self,
        event_type: AuditEventType,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        **kwargs
    ) -> str:
        """Authentication event. Failures are MEDIUM, everything else LOW."""
        failed = event_type == AuditEventType.LOGIN_FAILED or not success
        return self.log(
            event_type,
            f'Authentication: {_value(event_type)}',
            severity=AuditSeverity.MEDIUM if failed else AuditSeverity.LOW,
            success=success and event_type != AuditEventType.LOGIN_FAILED,
            resource='auth',
            details=details,
            error_message=error_message,
            **kwargs
        )

    def log_permission_change(
        self,
        event_type: AuditEventType,
        actor: Any,
        target_user_id: str,
        old_value: Any = None,
        new_value: Any = None,
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> str:
        """Role, status or permission change. Always HIGH."""
        payload = dict(details or {})
        payload.update({
            'target_user_id': target_user_id,
            'old_value': _value(old_value),
            'new_value': _value(new_value),
        })
        return self.log(
            event_type,
            f'Permission change: {_value(event_type)}',
            severity=AuditSeverity.HIGH,
            actor=actor,
            resource='user',
            resource_id=target_user_id,
            details=payload,
            **kwargs
        )

    def log_data_access(
        self,
        event_type: AuditEventType,
        actor: Any,
        resource: str,
        resource_id: Optional[str],
        action: str,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        **kwargs
    ) -> str:
        """Data access. Failures are HIGH, deletions MEDIUM, the rest LOW."""
        if not success:
            severity = AuditSeverity.HIGH
        elif _value(event_type).endswith('_deleted'):
            severity = AuditSeverity.MEDIUM
        else:
            severity = AuditSeverity.LOW
        return self.log(
            event_type,
            action,
            severity=severity,
            success=success,
            actor=actor,
            resource=resource,
            resource_id=resource_id,
            details=details,
            error_message=error_message,
            **kwargs
        )

    def log_security_event(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> str:
        """Security event. Always recorded as a failure at the given severity."""
        kwargs.setdefault('success', False)
        return self.log(event_type, action, severity=severity, details=details, **kwargs)

    def log_system_event(
        self,
        event_type: AuditEventType,
        action: str,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        **kwargs
    ) -> str:
        return self.log(
            event_type,
            action,
            severity=AuditSeverity.LOW if success else AuditSeverity.MEDIUM,
            success=success,
            resource='system',
            details=details,
            error_message=error_message,
            **kwargs
        )

    def query_logs(
        self,
        user_id: Optional[str] = None,
        event_type: Any = None,
        severity: Any = None,
        resource: Optional[str] = None,
        success: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = AuditConfig.DEFAULT_QUERY_LIMIT
    ) -> List[AuditLogEntry]:
        """
        Filtered audit entries, newest first.

        ``event_type`` and ``severity`` accept a single value or a list.
        ``limit`` is capped at ``AuditConfig.MAX_QUERY_LIMIT``. A store
        failure is logged and yields an empty list.
        """
        filters: Dict[str, Any] = {}
        if user_id:
            filters['user_id'] = user_id
        if event_type:
            filters['event_type'] = _multi_value(event_type)
        if severity:
            filters['severity'] = _multi_value(severity)
        if resource:
            filters['resource'] = resource
        if success is not None:
            filters['success'] = success
        ranges = {}
        if start_date or end_date:
            ranges['timestamp'] = (start_date, end_date)

        limit = max(1, min(int(limit), AuditConfig.MAX_QUERY_LIMIT))
        try:
            documents = self.store.query(
                AuditConfig.COLLECTION,
                filters=filters,
                ranges=ranges,
                order_by='timestamp',
                descending=True,
                limit=limit,
            )
        except Exception as e:
            logger.error("Failed to query audit logs", error=str(e))
            return []
        return [AuditLogEntry.from_document(doc) for doc in documents]

    def get_security_alerts(self, limit: int = 50) -> List[AuditLogEntry]:
        """Recent HIGH and CRITICAL failures."""
        return self.query_logs(
            severity=[AuditSeverity.HIGH, AuditSeverity.CRITICAL],
            success=False,
            limit=limit,
        )

    def get_user_activity(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        """Activity counters for one user over the trailing ``days``."""
        entries = self.query_logs(
            user_id=user_id,
            start_date=datetime.now(timezone.utc) - timedelta(days=days),
            limit=1000,
        )
        types = TallyCounter(entry.event_type for entry in entries)
        return {
            'user_id': user_id,
            'period_days': days,
            'total_events': len(entries),
            'logins': types[AuditEventType.LOGIN_SUCCESS.value],
            'failed_logins': types[AuditEventType.LOGIN_FAILED.value],
            'data_access': sum(types[e.value] for e in DATA_ACCESS_EVENTS),
            'security_events': sum(types[e.value] for e in SECURITY_EVENTS),
            'last_activity': entries[0].timestamp.isoformat() if entries else None,
        }

    def generate_security_report(self, days: int = 7) -> Dict[str, Any]:
        """
        Aggregate report over the trailing ``days``.

        Each actor's risk score sums the severity weight of their entries
        (critical 10, high 5, medium 2, low 1), doubled for failures. The ten
        highest scores are returned, highest first.
        """
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=days)
        entries = self.query_logs(start_date=start, end_date=end,
                                  limit=AuditConfig.MAX_QUERY_LIMIT)

        by_type = TallyCounter(entry.event_type for entry in entries)
        by_severity = TallyCounter(entry.severity for entry in entries)

        risk: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            if not entry.user_id:
                continue
            weight = RISK_WEIGHTS.get(AuditSeverity(entry.severity), 1)
            if not entry.success:
                weight *= 2
            record = risk.setdefault(entry.user_id, {
                'user_id': entry.user_id,
                'user_email': entry.user_email,
                'risk_score': 0,
                'event_count': 0,
            })
            record['risk_score'] += weight
            record['event_count'] += 1

        top_risky = sorted(risk.values(), key=lambda r: r['risk_score'], reverse=True)[:10]

        return {
            'period': {'start': start.isoformat(), 'end': end.isoformat(), 'days': days},
            'summary': {
                'total_events': len(entries),
                'failed_logins': by_type[AuditEventType.LOGIN_FAILED.value],
                'unauthorized_access': by_type[AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT.value],
                'suspicious_activity': by_type[AuditEventType.SUSPICIOUS_ACTIVITY.value],
                'rate_limit_violations': by_type[AuditEventType.RATE_LIMIT_EXCEEDED.value],
            },
            'events_by_type': dict(by_type),
            'events_by_severity': dict(by_severity),
            'top_risky_users': top_risky,
        }


def _multi_value(value: Any):
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_value(item) for item in value]
    return _value(value)


def get_audit_logger() -> AuditLogger:
    """The audit logger registered on the current application."""
    return current_app.extensions['audit_logger']
