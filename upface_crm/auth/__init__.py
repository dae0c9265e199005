"""
Authentication, authorization, auditing and request security.

- ``permissions``: role hierarchy, permission catalog and access predicates
- ``authentication``: bearer tokens, actors and CSRF tokens
- ``rate_limit``: sliding-window limiters over memory or Redis buckets
- ``audit``: append-only security audit trail
- ``security``: per-request middleware and route policies
- ``exceptions``: error codes and caller-safe error bodies
"""

from upface_crm.auth.exceptions import (
    AuthenticationException,
    AuthorizationException,
    SecurityErrorCode,
    SecurityException,
)
from upface_crm.auth.permissions import (
    Role,
    can_access_role_content,
    can_manage_user,
    get_role_permissions,
    has_permission,
    max_accessible_roles,
)

__all__ = [
    'AuthenticationException',
    'AuthorizationException',
    'Role',
    'SecurityErrorCode',
    'SecurityException',
    'can_access_role_content',
    'can_manage_user',
    'get_role_permissions',
    'has_permission',
    'max_accessible_roles',
]
