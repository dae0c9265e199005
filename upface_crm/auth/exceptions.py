"""
Security Exception Classes

Exception hierarchy for the CRM security layer. Each exception carries a
stable error code, an HTTP status and a caller-safe message so the nearest
boundary (the security middleware, a Flask error handler or a secure service
wrapper) can turn it into a response without leaking internal detail.

Taxonomy:
- ValidationException: structural schema failure, returned as field messages (400)
- AttackPatternException: input rejected outright by the attack scanner (400)
- AuthenticationException: missing or invalid bearer token (401)
- AuthorizationException: role, permission or resource rule failed (403)
- CSRFException: state-changing request without a matching CSRF token (403)
- RateLimitException: sliding-window limit exceeded (429)
- ResourceNotFoundException: referenced entity does not exist (404)
- SystemException: unanticipated internal fault (500)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import uuid


class SecurityErrorCode(Enum):
    """Standardized error codes used in responses, audit details and metrics."""

    # Authentication (1000-1999)
    AUTH_TOKEN_MISSING = "AUTH_1001"
    AUTH_TOKEN_INVALID = "AUTH_1002"
    AUTH_TOKEN_EXPIRED = "AUTH_1003"
    AUTH_USER_INACTIVE = "AUTH_1004"
    AUTH_USER_NOT_FOUND = "AUTH_1005"

    # Authorization (2000-2999)
    AUTHZ_PERMISSION_DENIED = "AUTHZ_2001"
    AUTHZ_ROLE_INSUFFICIENT = "AUTHZ_2002"
    AUTHZ_RESOURCE_ACCESS_DENIED = "AUTHZ_2003"
    AUTHZ_MANAGEMENT_DENIED = "AUTHZ_2004"

    # Security violations (4000-4999)
    SEC_RATE_LIMIT_EXCEEDED = "SEC_4001"
    SEC_CSRF_TOKEN_INVALID = "SEC_4002"
    SEC_ATTACK_PATTERN_DETECTED = "SEC_4003"
    SEC_ORIGIN_NOT_ALLOWED = "SEC_4004"

    # Validation (5000-5999)
    VAL_INPUT_INVALID = "VAL_5001"
    VAL_RESOURCE_NOT_FOUND = "VAL_5002"

    # System (9000-9999)
    SYS_INTERNAL_ERROR = "SYS_9001"


_CATEGORY_PREFIXES = {
    'AUTH_': 'authentication',
    'AUTHZ_': 'authorization',
    'SEC_': 'security_violation',
    'VAL_': 'validation',
    'SYS_': 'system',
}


class CatalogError(Exception):
    """Raised when the role/permission catalog violates its invariants."""


class SecurityException(Exception):
    """
    Base exception for every security-layer failure.

    Args:
        message: Internal description for logs and the audit trail
        error_code: Standardized error code
        user_message: Safe message returned to the caller
        metadata: Additional context for audit logging
        http_status: Status code used when converted to a response
    """

    def __init__(
        self,
        message: str,
        error_code: SecurityErrorCode,
        user_message: str = "Access denied",
        metadata: Optional[Dict[str, Any]] = None,
        http_status: int = 403
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_id = str(uuid.uuid4())
        self.error_code = error_code
        self.user_message = user_message
        self.metadata = metadata or {}
        self.http_status = http_status
        self.timestamp = datetime.now(timezone.utc)

        self.metadata.update({
            'error_id': self.error_id,
            'error_code': self.error_code.value,
            'exception_type': self.__class__.__name__,
        })


class ValidationException(SecurityException):
    """
    Structural validation failure.

    ``field_errors`` is a list of ``(field, message)`` pairs describing the
    literal submission, before any sanitization.
    """

    def __init__(
        self,
        message: str,
        field_errors: Optional[List[Tuple[str, str]]] = None,
        error_code: SecurityErrorCode = SecurityErrorCode.VAL_INPUT_INVALID,
        **kwargs
    ) -> None:
        kwargs.setdefault('user_message', 'Invalid input data provided')
        kwargs.setdefault('http_status', 400)
        super().__init__(message, error_code, **kwargs)

        self.field_errors = list(field_errors or [])
        self.metadata['fields'] = sorted({field for field, _ in self.field_errors})


class AttackPatternException(SecurityException):
    """Input matched an attack signature and was rejected without processing."""

    def __init__(
        self,
        message: str,
        categories: Optional[List[str]] = None,
        fields: Optional[List[str]] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('user_message', 'Invalid input detected')
        kwargs.setdefault('http_status', 400)
        super().__init__(message, SecurityErrorCode.SEC_ATTACK_PATTERN_DETECTED, **kwargs)

        self.categories = list(categories or [])
        self.fields = list(fields or [])
        self.metadata.update({'categories': self.categories, 'fields': self.fields})


class AuthenticationException(SecurityException):
    """Missing, malformed, expired or revoked credentials."""

    def __init__(
        self,
        message: str,
        error_code: SecurityErrorCode = SecurityErrorCode.AUTH_TOKEN_MISSING,
        user_id: Optional[str] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('user_message', 'Authentication required')
        kwargs.setdefault('http_status', 401)
        super().__init__(message, error_code, **kwargs)

        if user_id:
            self.metadata['user_id'] = user_id


class AuthorizationException(SecurityException):
    """
    The actor is authenticated but the requested action is not allowed.

    Carries the actor role, the required role or permission and the
    resource so the denial can be audited with full context.
    """

    def __init__(
        self,
        message: str,
        error_code: SecurityErrorCode = SecurityErrorCode.AUTHZ_PERMISSION_DENIED,
        user_id: Optional[str] = None,
        user_role: Optional[str] = None,
        required_role: Optional[str] = None,
        required_permission: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('user_message', 'Insufficient permissions for this operation')
        kwargs.setdefault('http_status', 403)
        super().__init__(message, error_code, **kwargs)

        self.user_id = user_id
        self.user_role = user_role
        self.required_role = required_role
        self.required_permission = required_permission
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.metadata.update({
            'user_role': user_role,
            'required_role': required_role,
            'required_permission': required_permission,
            'resource_type': resource_type,
            'resource_id': resource_id,
        })


class CSRFException(SecurityException):
    def __init__(self, message: str = 'CSRF token missing or invalid', **kwargs) -> None:
        kwargs.setdefault('user_message', 'Invalid or missing CSRF token')
        kwargs.setdefault('http_status', 403)
        super().__init__(message, SecurityErrorCode.SEC_CSRF_TOKEN_INVALID, **kwargs)


class RateLimitException(SecurityException):
    """Sliding-window limit exceeded for an operation class."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        limit: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('user_message', 'Too many requests. Please try again later.')
        kwargs.setdefault('http_status', 429)
        super().__init__(message, SecurityErrorCode.SEC_RATE_LIMIT_EXCEEDED, **kwargs)

        self.operation = operation
        self.limit = limit
        self.retry_after = retry_after
        self.metadata.update({
            'operation': operation,
            'limit': limit,
            'retry_after': retry_after,
        })


class ResourceNotFoundException(SecurityException):
    def __init__(self, resource_type: str, resource_id: Optional[str] = None, **kwargs) -> None:
        kwargs.setdefault('user_message', f'{resource_type.capitalize()} not found')
        kwargs.setdefault('http_status', 404)
        super().__init__(
            f'{resource_type} {resource_id} not found',
            SecurityErrorCode.VAL_RESOURCE_NOT_FOUND,
            **kwargs
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class SystemException(SecurityException):
    """Unanticipated internal fault. The message is audited, never returned."""

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault('user_message', 'Internal server error')
        kwargs.setdefault('http_status', 500)
        super().__init__(message, SecurityErrorCode.SYS_INTERNAL_ERROR, **kwargs)


def get_error_category(error_code: SecurityErrorCode) -> str:
    """Map an error code to its category name for responses and metrics."""
    for prefix, category in _CATEGORY_PREFIXES.items():
        if error_code.value.startswith(prefix):
            return category
    return 'unknown'


def create_safe_error_response(exception: SecurityException) -> Dict[str, Any]:
    """
    Create a caller-safe error body.

    Only the user message, code and identifiers are exposed; the internal
    message stays in logs and the audit trail.

    Args:
        exception: Security exception to convert

    Returns:
        Dictionary suitable for ``jsonify``
    """
    response = {
        'error': True,
        'error_code': exception.error_code.value,
        'message': exception.user_message,
        'error_id': exception.error_id,
        'timestamp': exception.timestamp.isoformat(),
        'category': get_error_category(exception.error_code),
    }
    if isinstance(exception, ValidationException) and exception.field_errors:
        response['field_errors'] = [
            {'field': field, 'message': message}
            for field, message in exception.field_errors
        ]
    if isinstance(exception, RateLimitException) and exception.retry_after is not None:
        response['retry_after'] = exception.retry_after
    return response
