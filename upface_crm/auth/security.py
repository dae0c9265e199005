"""
Security Middleware

Per-request orchestration of the security layer. Every inbound request runs
through a fixed pipeline that stops at the first failing step:

1. Baseline security response headers (Flask-Talisman, applied to every
   response including the ones produced by a later denial)
2. CORS allow-list check; preflight OPTIONS requests short-circuit here
3. Rate limit keyed by client IP and route: 429 plus a HIGH audit entry
4. Attack-pattern scan of the URL, selected headers and body: 400
5. Bearer authentication: 401 unless the path is on the anonymous allow-list
6. CSRF token check for state-changing methods: 403
7. Authorization by minimum role, permission and/or resource predicate:
   403 plus a HIGH ``unauthorized_access_attempt`` entry
8. LOW success entry (skipped when the log level is ``minimal``)

Any unexpected exception inside the pipeline is recorded as a
``system_error`` and answered with a generic 500.

Routes declare their requirements with the ``security_policy`` decorator;
``auth_policy``, ``public_policy`` and ``admin_policy`` build the common
policies.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import unquote

import structlog
from flask import Flask, current_app, g, jsonify, request, session
from flask_cors import CORS
from flask_talisman import Talisman
from structlog.contextvars import bind_contextvars, clear_contextvars

from upface_crm.auth.audit import AuditEventType, AuditLogger, AuditSeverity
from upface_crm.auth.authentication import (
    CSRF_HEADER,
    CSRF_SESSION_KEY,
    Actor,
    Authenticator,
    extract_bearer_token,
    validate_csrf_token,
)
from upface_crm.auth.exceptions import (
    AttackPatternException,
    AuthenticationException,
    AuthorizationException,
    CSRFException,
    RateLimitException,
    SecurityErrorCode,
    SecurityException,
    SystemException,
    create_safe_error_response,
)
from upface_crm.auth.permissions import Role, can_access_role_content, has_permission
from upface_crm.auth.rate_limit import RateLimiterRegistry
from upface_crm.monitoring.metrics import authz_metrics, middleware_metrics, validation_metrics
from upface_crm.utils.sanitizers import AttackPatternDetector, attack_detector

logger = structlog.get_logger(__name__)

SAFE_METHODS = frozenset({'GET', 'HEAD', 'OPTIONS'})
SCANNED_HEADERS = ('User-Agent', 'Referer', 'X-Forwarded-For')
LOG_LEVELS = ('minimal', 'standard', 'detailed')

DEFAULT_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' https://www.googletagmanager.com; "
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
    "font-src 'self' https://fonts.gstatic.com; "
    "img-src 'self' data: https:; "
    "connect-src 'self' https://api.upface.dev; "
    "frame-ancestors 'none'"
)
DEFAULT_HSTS_MAX_AGE = 31536000
PERMISSIONS_POLICY = {'camera': '()', 'microphone': '()', 'geolocation': '()'}
NO_CACHE_HEADERS = {
    'Cache-Control': 'no-store, no-cache, must-revalidate, proxy-revalidate',
    'Pragma': 'no-cache',
    'Expires': '0',
    'X-Robots-Tag': 'noindex',
}

CORS_ALLOW_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'OPTIONS']
CORS_ALLOW_HEADERS = ['Content-Type', 'Authorization', 'X-CSRF-Token', 'X-Requested-With']
CORS_EXPOSE_HEADERS = [
    'X-Request-ID', 'X-RateLimit-Limit', 'X-RateLimit-Remaining', 'X-RateLimit-Reset',
    'Retry-After',
]

ResourceCheck = Callable[[Actor, Dict[str, Any]], bool]


@dataclass(frozen=True)
class SecurityPolicy:
    """
    Requirements a route places on a request.

    Attributes:
        require_auth: Reject requests without a valid bearer token
        required_role: Minimum role, checked with ``can_access_role_content``
        required_permission: Catalog permission id the actor must hold
        resource_check: Predicate over the actor and the route's view args
        rate_limit: Operation class name, or None to skip rate limiting
        csrf: Enforce the CSRF token on state-changing methods
        log_level: ``minimal``, ``standard`` or ``detailed``; None uses the
            application's ``SECURITY_LOG_LEVEL``
    """

    require_auth: bool = True
    required_role: Optional[Role] = None
    required_permission: Optional[str] = None
    resource_check: Optional[ResourceCheck] = None
    rate_limit: Optional[str] = 'api_general'
    csrf: bool = True
    log_level: Optional[str] = None


def auth_policy(**overrides) -> SecurityPolicy:
    """Authenticated route under the general API rate limit."""
    return replace(SecurityPolicy(), **overrides)


def public_policy(**overrides) -> SecurityPolicy:
    """Anonymous route: 200 requests per 15 minutes, minimal logging."""
    return replace(
        SecurityPolicy(require_auth=False, rate_limit='public', log_level='minimal'),
        **overrides
    )


def admin_policy(**overrides) -> SecurityPolicy:
    """Admin-or-above route: 50 requests per 15 minutes, detailed logging."""
    return replace(
        SecurityPolicy(required_role=Role.ADMIN, rate_limit='admin', log_level='detailed'),
        **overrides
    )


def security_policy(policy: Optional[SecurityPolicy] = None, **overrides):
    """
    Attach a policy to a view function.

    Usage:
        @bp.route('/clients/<client_id>', methods=['DELETE'])
        @security_policy(required_permission='crm.clients.delete')
        def delete_client(client_id): ...
    """
    resolved = policy if policy is not None else auth_policy(**overrides)

    def decorator(view):
        view.security_policy = resolved
        return view
    return decorator


@dataclass
class SecurityDecision:
    """Outcome of the pipeline for one request."""

    allowed: bool
    step: str
    status: int = 200
    actor: Optional[Actor] = None
    error: Optional[SecurityException] = None
    headers: Dict[str, str] = field(default_factory=dict)


def configure_security_headers(app: Flask) -> Talisman:
    """
    Baseline security headers through Flask-Talisman.

    Sets ``X-Content-Type-Options``, ``X-Frame-Options: DENY``, the
    configured ``Content-Security-Policy``, ``Strict-Transport-Security`` on
    secure requests and ``Referrer-Policy``. Talisman also applies the
    session cookie flags and, when ``FORCE_HTTPS`` is set, redirects plain
    HTTP requests.
    """
    talisman = Talisman(
        app,
        force_https=app.config.get('FORCE_HTTPS', False),
        force_https_permanent=True,
        frame_options='DENY',
        content_security_policy=app.config.get('CONTENT_SECURITY_POLICY', DEFAULT_CSP),
        strict_transport_security=True,
        strict_transport_security_max_age=app.config.get('HSTS_MAX_AGE', DEFAULT_HSTS_MAX_AGE),
        strict_transport_security_include_subdomains=True,
        strict_transport_security_preload=True,
        referrer_policy='strict-origin-when-cross-origin',
        permissions_policy=PERMISSIONS_POLICY,
        session_cookie_secure=app.config.get('SESSION_COOKIE_SECURE', True),
        session_cookie_http_only=True,
        session_cookie_samesite=app.config.get('SESSION_COOKIE_SAMESITE', 'Lax'),
    )
    logger.info("Security headers configured", force_https=app.config.get('FORCE_HTTPS', False))
    return talisman


def configure_cors(app: Flask) -> CORS:
    """CORS response headers for the exact origins in ``CORS_ALLOWED_ORIGINS``."""
    origins = list(app.config.get('CORS_ALLOWED_ORIGINS', []))
    cors = CORS(
        app,
        origins=origins,
        methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
        expose_headers=CORS_EXPOSE_HEADERS,
        supports_credentials=True,
        max_age=86400,
        send_wildcard=False,
        vary_header=True,
    )
    logger.info("CORS configured", origins=origins)
    return cors


class SecurityMiddleware:
    """
    Flask integration of the request pipeline.

    Baseline headers and CORS response headers come from Flask-Talisman and
    flask-cors (see ``configure_security_headers`` and ``configure_cors``);
    the pipeline itself only rejects origins outside the allow-list.

    Args:
        audit_logger: Sink for every decision point
        rate_limiters: Limiters per operation class
        authenticator: Bearer token resolver
        detector: Attack-pattern scanner
        allowed_origins: Exact origins accepted for cross-origin requests
        anonymous_paths: Path prefixes reachable without authentication
        log_level: Default success logging level
        default_policy: Policy for routes without their own
    """

    def __init__(
        self,
        audit_logger: AuditLogger,
        rate_limiters: RateLimiterRegistry,
        authenticator: Authenticator,
        detector: AttackPatternDetector = attack_detector,
        allowed_origins: Iterable[str] = (),
        anonymous_paths: Iterable[str] = (),
        log_level: str = 'standard',
        default_policy: Optional[SecurityPolicy] = None
    ):
        if log_level not in LOG_LEVELS:
            raise ValueError(f'Unknown security log level: {log_level}')
        self.audit = audit_logger
        self.rate_limiters = rate_limiters
        self.authenticator = authenticator
        self.detector = detector
        self.allowed_origins = frozenset(allowed_origins)
        self.anonymous_paths = tuple(p.rstrip('/') for p in anonymous_paths)
        self.log_level = log_level
        self.default_policy = default_policy or auth_policy()

    def init_app(self, app: Flask) -> None:
        app.extensions['security_middleware'] = self

        @app.before_request
        def security_pipeline():
            """Run the pipeline; a returned response ends the request."""
            decision = self.evaluate(self.policy_for_request())
            g.security_decision = decision
            g.actor = decision.actor
            if decision.allowed:
                return None
            return self.deny_response(decision)

        @app.after_request
        def security_response_headers(response):
            """No-cache, rate-limit and request id headers on every response."""
            for name, value in NO_CACHE_HEADERS.items():
                response.headers[name] = value
            decision = g.get('security_decision')
            if decision is not None:
                for name, value in decision.headers.items():
                    response.headers.setdefault(name, value)
            if g.get('request_id'):
                response.headers['X-Request-ID'] = g.request_id
            return response

        @app.teardown_request
        def clear_request_log_context(exc=None):
            clear_contextvars()

    def policy_for_request(self) -> SecurityPolicy:
        view = current_app.view_functions.get(request.endpoint) if request.endpoint else None
        return getattr(view, 'security_policy', None) or self.default_policy

    def is_anonymous_path(self, path: str) -> bool:
        path = path.rstrip('/') or '/'
        return any(path == p or path.startswith(p + '/') for p in self.anonymous_paths)

    def evaluate(self, policy: SecurityPolicy) -> SecurityDecision:
        """
        Run the pipeline for the current request.

        Returns:
            SecurityDecision; ``allowed`` is False at the first failing step
        """
        started = time.perf_counter()
        g.request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex
        clear_contextvars()
        bind_contextvars(
            request_id=g.request_id, method=request.method, path=request.path
        )

        try:
            decision = self._run_pipeline(policy)
        except Exception as e:
            logger.exception("Security pipeline failed")
            self.audit.log_system_event(
                AuditEventType.SYSTEM_ERROR,
                'Security middleware error',
                success=False,
                details={'path': request.path, 'method': request.method},
                error_message=str(e),
            )
            decision = SecurityDecision(
                allowed=False, step='system', status=500,
                error=SystemException(f'Security pipeline failed: {e}'),
            )

        outcome = 'allowed' if decision.allowed else 'denied'
        middleware_metrics['requests_total'].labels(step=decision.step, outcome=outcome).inc()
        middleware_metrics['pipeline_duration'].labels(outcome=outcome).observe(
            time.perf_counter() - started
        )
        return decision

    def _run_pipeline(self, policy: SecurityPolicy) -> SecurityDecision:
        route = request.url_rule.rule if request.url_rule is not None else request.path
        client_ip = request.remote_addr or 'unknown'

        # CORS
        origin = request.headers.get('Origin')
        if origin and origin not in self.allowed_origins:
            logger.warning("Cross-origin request rejected", origin=origin)
            return SecurityDecision(
                allowed=False, step='cors', status=403,
                error=AuthorizationException(
                    f'Origin {origin} is not allowed',
                    error_code=SecurityErrorCode.SEC_ORIGIN_NOT_ALLOWED,
                    user_message='Origin not allowed',
                ),
            )
        if request.method == 'OPTIONS':
            return SecurityDecision(allowed=False, step='preflight', status=204)

        # Rate limit
        headers: Dict[str, str] = {}
        if policy.rate_limit:
            limiter = self.rate_limiters.get(policy.rate_limit)
            bucket = f'{client_ip}:{route}'
            if not limiter.is_allowed(bucket):
                status = limiter.status(bucket)
                self.audit.log_security_event(
                    AuditEventType.RATE_LIMIT_EXCEEDED,
                    AuditSeverity.HIGH,
                    f'Rate limit exceeded for {request.method} {route}',
                    ip_address=client_ip,
                    resource=route,
                    details={
                        'operation': policy.rate_limit,
                        'limit': limiter.max_requests,
                        'window_seconds': limiter.window_seconds,
                    },
                )
                return SecurityDecision(
                    allowed=False, step='rate_limit', status=429,
                    error=RateLimitException(
                        f'Rate limit exceeded for {route}',
                        operation=policy.rate_limit,
                        limit=limiter.max_requests,
                        retry_after=status.retry_after,
                    ),
                    headers={'Retry-After': str(status.retry_after)},
                )
            status = limiter.status(bucket)
            headers = {
                'X-RateLimit-Limit': str(status.limit),
                'X-RateLimit-Remaining': str(status.remaining),
                'X-RateLimit-Reset': str(int(status.reset_at)),
            }

        # Attack patterns
        matches = self._scan_request()
        if matches:
            categories = sorted({m.category for m in matches})
            for category in categories:
                validation_metrics['attack_patterns_total'].labels(
                    category=category, source='request'
                ).inc()
            self.audit.log_security_event(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                AuditSeverity.HIGH,
                f'Attack pattern detected in {request.method} {route}',
                ip_address=client_ip,
                resource=route,
                details={
                    'categories': categories,
                    'fields': sorted({m.field for m in matches}),
                    'signatures': sorted({m.signature for m in matches}),
                },
            )
            return SecurityDecision(
                allowed=False, step='attack_scan', status=400, headers=headers,
                error=AttackPatternException(
                    'Attack pattern detected in request', categories=categories
                ),
            )

        # Authentication
        require_auth = policy.require_auth and not self.is_anonymous_path(request.path)
        actor = None
        token = extract_bearer_token(request.headers.get('Authorization'))
        if token or require_auth:
            try:
                actor = self.authenticator.authenticate(token)
            except AuthenticationException as e:
                if require_auth:
                    self.audit.log_security_event(
                        AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
                        AuditSeverity.MEDIUM,
                        f'Unauthenticated request to {request.method} {route}',
                        user_id=e.metadata.get('user_id'),
                        ip_address=client_ip,
                        resource=route,
                        details={'reason': e.error_code.value},
                        error_message=e.message,
                    )
                    return SecurityDecision(
                        allowed=False, step='authentication', status=401,
                        error=e, headers=headers,
                    )
                logger.info("Invalid token on anonymous route ignored", route=route)

        # CSRF
        if policy.csrf and request.method not in SAFE_METHODS:
            if not validate_csrf_token(request.headers.get(CSRF_HEADER),
                                       session.get(CSRF_SESSION_KEY)):
                self.audit.log_security_event(
                    AuditEventType.CSRF_TOKEN_INVALID,
                    AuditSeverity.HIGH,
                    f'CSRF token missing or invalid for {request.method} {route}',
                    actor=actor,
                    ip_address=client_ip,
                    resource=route,
                )
                return SecurityDecision(
                    allowed=False, step='csrf', status=403, actor=actor,
                    error=CSRFException(), headers=headers,
                )

        # Authorization
        denial = self._authorize(policy, actor)
        authz_metrics['decisions_total'].labels(
            check='route',
            decision='deny' if denial is not None else 'allow',
            role=actor.role.value if actor else 'anonymous',
        ).inc()
        if denial is not None:
            self.audit.log_security_event(
                AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
                AuditSeverity.HIGH,
                f'Access denied to {request.method} {route}',
                actor=actor,
                ip_address=client_ip,
                resource=route,
                resource_id=_first_view_arg(),
                details={
                    'user_role': actor.role.value if actor else None,
                    'required_role': denial.required_role,
                    'required_permission': denial.required_permission,
                    'method': request.method,
                },
            )
            status = 401 if actor is None else 403
            return SecurityDecision(
                allowed=False, step='authorization', status=status, actor=actor,
                error=denial if actor is not None else AuthenticationException(
                    'Authentication required for protected route'
                ),
                headers=headers,
            )

        # Success
        log_level = policy.log_level or self.log_level
        if log_level != 'minimal':
            details = {'method': request.method, 'route': route}
            if log_level == 'detailed':
                details.update({
                    'query_params': sorted(request.args.keys()),
                    'content_length': request.content_length,
                    'view_args': dict(request.view_args or {}),
                })
            self.audit.log(
                AuditEventType.API_REQUEST,
                f'{request.method} {route}',
                severity=AuditSeverity.LOW,
                success=True,
                actor=actor,
                ip_address=client_ip,
                resource=route,
                details=details,
            )
        return SecurityDecision(
            allowed=True, step='passed', status=200, actor=actor, headers=headers
        )

    def _scan_request(self):
        matches = self.detector.scan(unquote(request.full_path), 'url')
        for header in SCANNED_HEADERS:
            value = request.headers.get(header)
            if value:
                matches.extend(self.detector.scan(value, f'headers.{header.lower()}'))

        if request.method not in SAFE_METHODS:
            payload = request.get_json(silent=True)
            if payload is not None:
                matches.extend(self.detector.scan_payload(payload, 'body'))
            elif request.form:
                matches.extend(self.detector.scan_payload(request.form.to_dict(), 'body'))
            for name, upload in request.files.items():
                matches.extend(self.detector.scan(upload.filename or '', f'files.{name}'))
        return matches

    def _authorize(self, policy: SecurityPolicy,
                   actor: Optional[Actor]) -> Optional[AuthorizationException]:
        if not (policy.required_role or policy.required_permission or policy.resource_check):
            return None

        role = actor.role if actor else None
        required_role = policy.required_role.value if policy.required_role else None

        if policy.required_role and not can_access_role_content(role, policy.required_role):
            return AuthorizationException(
                f'Role {getattr(role, "value", None)} below required {required_role}',
                error_code=SecurityErrorCode.AUTHZ_ROLE_INSUFFICIENT,
                user_id=actor.id if actor else None,
                user_role=getattr(role, 'value', None),
                required_role=required_role,
            )
        if policy.required_permission and not has_permission(role, policy.required_permission):
            return AuthorizationException(
                f'Missing permission {policy.required_permission}',
                user_id=actor.id if actor else None,
                user_role=getattr(role, 'value', None),
                required_permission=policy.required_permission,
            )
        if policy.resource_check and (
            actor is None or not policy.resource_check(actor, dict(request.view_args or {}))
        ):
            return AuthorizationException(
                'Resource check failed',
                error_code=SecurityErrorCode.AUTHZ_RESOURCE_ACCESS_DENIED,
                user_id=actor.id if actor else None,
                user_role=getattr(role, 'value', None),
            )
        return None

    def deny_response(self, decision: SecurityDecision):
        if decision.step == 'preflight':
            return current_app.response_class(status=204)
        response = jsonify(create_safe_error_response(decision.error))
        response.status_code = decision.status
        return response


def _first_view_arg() -> Optional[str]:
    args = request.view_args or {}
    for value in args.values():
        return str(value)
    return None


def current_actor() -> Optional[Actor]:
    """Actor resolved by the middleware for the current request."""
    return g.get('actor')


def require_actor() -> Actor:
    """
    Raises:
        AuthenticationException: If the current request has no actor
    """
    actor = current_actor()
    if actor is None:
        raise AuthenticationException('Authentication required')
    return actor
