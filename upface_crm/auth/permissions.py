"""
Role & Permission Catalog and Authorization Engine

This module holds the static role hierarchy, the permission catalog and the
role-to-permission assignments for the CRM, together with the pure predicates
every route handler and secure service consults before acting.

Features:
- Closed role set with integer hierarchy levels (agent < manager < admin < owner)
- Immutable, dot-namespaced permission catalog fixed at deploy time
- Fail-closed predicates: an unknown or missing role never gains access
- "View" checks are level >= target, "manage" checks are level > target
- Catalog invariants verified when the module is imported

The three canonical predicates are ``has_permission``,
``can_access_role_content`` and ``can_manage_user``. Other helpers in this
module are built on top of them and no other part of the package compares
role strings directly.
"""

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from upface_crm.auth.exceptions import CatalogError


class Role(str, Enum):
    """Closed set of user roles, declared lowest to highest."""

    AGENT = 'agent'
    MANAGER = 'manager'
    ADMIN = 'admin'
    OWNER = 'owner'


ROLE_HIERARCHY: Dict[Role, int] = {
    Role.AGENT: 1,
    Role.MANAGER: 2,
    Role.ADMIN: 3,
    Role.OWNER: 4,
}


@dataclass(frozen=True)
class Permission:
    """Immutable catalog entry. ``category`` only groups entries for display."""

    id: str
    name: str
    description: str
    category: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'category': self.category,
        }


PERMISSIONS = (
    # CRM
    Permission('crm.access', 'CRM Access', 'Access the CRM system and features', 'CRM'),
    Permission('crm.clients.view', 'View Clients', 'View client information and details', 'CRM'),
    Permission('crm.clients.create', 'Create Clients', 'Add new clients to the system', 'CRM'),
    Permission('crm.clients.edit', 'Edit Clients', 'Modify existing client information', 'CRM'),
    Permission('crm.clients.delete', 'Delete Clients', 'Remove clients from the system', 'CRM'),
    Permission('crm.clients.assign', 'Assign Clients', 'Assign clients to team members', 'CRM'),
    Permission('crm.clients.viewAll', 'View All Clients', 'View clients across all team members', 'CRM'),
    # User management
    Permission('users.view', 'View Users', 'View user profiles and information', 'User Management'),
    Permission('users.create', 'Create Users', 'Add new users to the system', 'User Management'),
    Permission('users.edit', 'Edit Users', 'Modify user information and settings', 'User Management'),
    Permission('users.delete', 'Delete Users', 'Remove users from the system', 'User Management'),
    Permission('users.permissions', 'Manage Permissions', 'Modify user roles and permissions', 'User Management'),
    # Training
    Permission('training.agent', 'Agent Training', 'Access sales agent training materials', 'Training'),
    Permission('training.manager', 'Manager Training', 'Access account manager training materials', 'Training'),
    Permission('training.admin', 'Admin Training', 'Access administrator training materials', 'Training'),
    Permission('training.owner', 'Owner Manual', 'Access business owner strategic materials', 'Training'),
    # Analytics
    Permission('analytics.view', 'View Analytics', 'View performance reports and analytics', 'Analytics'),
    Permission('analytics.export', 'Export Data', 'Export reports and data', 'Analytics'),
    # System administration
    Permission('system.config', 'System Configuration', 'Modify system settings and configuration', 'System'),
    Permission('system.backup', 'System Backup', 'Create and manage system backups', 'System'),
    Permission('system.security', 'Security Management', 'Manage security settings and audit logs', 'System'),
    Permission('system.integration', 'Integrations', 'Manage third-party integrations and APIs', 'System'),
)

_CATALOG: Mapping[str, Permission] = OrderedDict((p.id, p) for p in PERMISSIONS)


@dataclass(frozen=True)
class RolePermissionSet:
    """Permission ids held by a role and the roles whose content it may access."""

    role: Role
    permissions: FrozenSet[str]
    accessible_roles: FrozenSet[Role]


_AGENT_PERMISSIONS = frozenset({
    'crm.access',
    'crm.clients.view',
    'crm.clients.create',
    'crm.clients.edit',
    'training.agent',
    'analytics.view',
})

_MANAGER_PERMISSIONS = _AGENT_PERMISSIONS | {
    'crm.clients.assign',
    'crm.clients.viewAll',
    'users.view',
    'users.edit',
    'training.manager',
    'analytics.export',
}

_ADMIN_PERMISSIONS = _MANAGER_PERMISSIONS | {
    'crm.clients.delete',
    'users.create',
    'users.delete',
    'users.permissions',
    'training.admin',
    'system.config',
    'system.backup',
    'system.security',
}

ROLE_PERMISSIONS: Dict[Role, RolePermissionSet] = {
    Role.AGENT: RolePermissionSet(
        Role.AGENT, _AGENT_PERMISSIONS, frozenset({Role.AGENT})
    ),
    Role.MANAGER: RolePermissionSet(
        Role.MANAGER, _MANAGER_PERMISSIONS, frozenset({Role.AGENT, Role.MANAGER})
    ),
    Role.ADMIN: RolePermissionSet(
        Role.ADMIN, _ADMIN_PERMISSIONS,
        frozenset({Role.AGENT, Role.MANAGER, Role.ADMIN})
    ),
    # Owners hold the whole catalog
    Role.OWNER: RolePermissionSet(
        Role.OWNER, frozenset(_CATALOG), frozenset(Role)
    ),
}


def resolve_role(value: Any) -> Optional[Role]:
    """
    Coerce a role name or ``Role`` member to a ``Role``.

    Returns None for anything that is not a known role, so callers can
    treat the result as "no role" and fail closed.
    """
    if isinstance(value, Role):
        return value
    if isinstance(value, str):
        try:
            return Role(value.strip().lower())
        except ValueError:
            return None
    return None


def _level(role: Any) -> Optional[int]:
    resolved = resolve_role(role)
    if resolved is None:
        return None
    return ROLE_HIERARCHY.get(resolved)


def has_permission(role: Any, permission_id: str) -> bool:
    """
    Check whether a role holds a catalog permission.

    Args:
        role: Role member or role name; None or unknown values are denied
        permission_id: Dot-namespaced permission id such as ``crm.clients.delete``

    Returns:
        True iff the permission id is in the role's assigned set
    """
    resolved = resolve_role(role)
    if resolved is None:
        return False
    assignment = ROLE_PERMISSIONS.get(resolved)
    return assignment is not None and permission_id in assignment.permissions


def can_access_role_content(role: Any, target_role: Any) -> bool:
    """
    Check whether a role may view content scoped to ``target_role``.

    A role sees its own level and everything below it, so this check is
    reflexive. Unknown roles on either side are denied.
    """
    level = _level(role)
    target_level = _level(target_role)
    if level is None or target_level is None:
        return False
    return level >= target_level


def can_manage_user(acting_role: Any, target_role: Any) -> bool:
    """
    Check whether ``acting_role`` may mutate an identity holding ``target_role``.

    Requires a strictly higher level: peers never manage each other and
    nobody manages their own role level.
    """
    level = _level(acting_role)
    target_level = _level(target_role)
    if level is None or target_level is None:
        return False
    return level > target_level


def max_accessible_roles(role: Any) -> FrozenSet[Role]:
    """Roles at or below the caller's level; empty for an unknown role."""
    return frozenset(r for r in Role if can_access_role_content(role, r))


def get_role_permissions(role: Any) -> List[Permission]:
    """Resolve a role's permission ids to catalog entries, in catalog order."""
    resolved = resolve_role(role)
    if resolved is None:
        return []
    return [p for p in PERMISSIONS if has_permission(resolved, p.id)]


def validate_access(role: Any, permission_ids: Iterable[str]) -> bool:
    """True iff the role holds every permission in ``permission_ids``."""
    if resolve_role(role) is None:
        return False
    return all(has_permission(role, permission_id) for permission_id in permission_ids)


def can_access_training(role: Any, training_role: Any) -> bool:
    return can_access_role_content(role, training_role)


def get_permission(permission_id: str) -> Optional[Permission]:
    return _CATALOG.get(permission_id)


def get_permissions_by_category() -> Dict[str, List[Permission]]:
    """Group the catalog by category, preserving catalog order."""
    grouped: Dict[str, List[Permission]] = OrderedDict()
    for permission in PERMISSIONS:
        grouped.setdefault(permission.category, []).append(permission)
    return grouped


def sorted_roles(roles: Iterable[Role]) -> List[Role]:
    """Order roles lowest to highest for display."""
    return sorted(roles, key=lambda r: ROLE_HIERARCHY[r])


def validate_catalog() -> None:
    """
    Verify the catalog invariants.

    Raises:
        CatalogError: If levels are not strictly increasing, an assignment
            references an unknown permission, accessible roles are not
            exactly "self and lower", the owner lacks any catalog entry, or
            a role drops a permission held by the role below it.
    """
    if len(_CATALOG) != len(PERMISSIONS):
        raise CatalogError('Duplicate permission id in catalog')

    levels = [ROLE_HIERARCHY.get(role) for role in Role]
    if None in levels or any(b <= a for a, b in zip(levels, levels[1:])):
        raise CatalogError('Role hierarchy levels must be unique and strictly increasing')

    previous: Optional[RolePermissionSet] = None
    for role in Role:
        assignment = ROLE_PERMISSIONS.get(role)
        if assignment is None or assignment.role is not role:
            raise CatalogError(f'Missing permission assignment for role {role.value}')

        unknown = assignment.permissions - set(_CATALOG)
        if unknown:
            raise CatalogError(
                f'Role {role.value} references unknown permissions: {sorted(unknown)}'
            )

        expected_roles = frozenset(
            r for r in Role if ROLE_HIERARCHY[r] <= ROLE_HIERARCHY[role]
        )
        if assignment.accessible_roles != expected_roles:
            raise CatalogError(
                f'Role {role.value} must access exactly itself and lower roles'
            )

        if previous is not None and not previous.permissions <= assignment.permissions:
            missing = previous.permissions - assignment.permissions
            raise CatalogError(
                f'Role {role.value} lacks permissions held by {previous.role.value}: '
                f'{sorted(missing)}'
            )
        previous = assignment

    if ROLE_PERMISSIONS[Role.OWNER].permissions != frozenset(_CATALOG):
        raise CatalogError('Owner role must hold the full permission catalog')


validate_catalog()
