"""Role hierarchy, permission catalog and access predicates."""

from unittest.mock import patch

import pytest

from upface_crm.auth.exceptions import CatalogError
from upface_crm.auth.permissions import (
    PERMISSIONS,
    ROLE_PERMISSIONS,
    Role,
    RolePermissionSet,
    can_access_role_content,
    can_access_training,
    can_manage_user,
    get_permission,
    get_permissions_by_category,
    get_role_permissions,
    has_permission,
    max_accessible_roles,
    resolve_role,
    validate_access,
    validate_catalog,
)

pytestmark = pytest.mark.unit


class TestHasPermission:

    def test_agent_cannot_delete_clients(self):
        assert has_permission(Role.AGENT, 'crm.clients.delete') is False

    def test_admin_can_delete_clients(self):
        assert has_permission(Role.ADMIN, 'crm.clients.delete') is True

    def test_role_names_are_accepted(self):
        assert has_permission('manager', 'crm.clients.assign') is True

    @pytest.mark.parametrize('role', [None, '', 'superuser', 42])
    def test_unknown_roles_fail_closed(self, role):
        assert has_permission(role, 'crm.access') is False

    def test_unknown_permission_is_denied_even_for_owner(self):
        assert has_permission(Role.OWNER, 'crm.clients.teleport') is False

    def test_owner_holds_every_catalog_entry(self):
        assert all(has_permission(Role.OWNER, p.id) for p in PERMISSIONS)


class TestRoleComparisons:

    def test_content_access_is_reflexive(self):
        for role in Role:
            assert can_access_role_content(role, role) is True

    def test_content_access_goes_down_not_up(self):
        assert can_access_role_content(Role.MANAGER, Role.AGENT) is True
        assert can_access_role_content(Role.AGENT, Role.MANAGER) is False

    def test_management_is_strict(self):
        """Peers never manage each other."""
        for role in Role:
            assert can_manage_user(role, role) is False
        assert can_manage_user(Role.ADMIN, Role.MANAGER) is True
        assert can_manage_user(Role.MANAGER, Role.ADMIN) is False

    def test_unknown_roles_on_either_side_are_denied(self):
        assert can_access_role_content('ghost', Role.AGENT) is False
        assert can_access_role_content(Role.OWNER, 'ghost') is False
        assert can_manage_user(None, Role.AGENT) is False

    def test_max_accessible_roles(self):
        assert max_accessible_roles(Role.MANAGER) == frozenset({Role.AGENT, Role.MANAGER})
        assert max_accessible_roles(Role.OWNER) == frozenset(Role)
        assert max_accessible_roles('nobody') == frozenset()

    def test_training_access_follows_hierarchy(self):
        assert can_access_training(Role.ADMIN, Role.MANAGER) is True
        assert can_access_training(Role.AGENT, Role.ADMIN) is False


class TestCatalogQueries:

    def test_role_permissions_keep_catalog_order(self):
        catalog_order = [p.id for p in PERMISSIONS]
        ids = [p.id for p in get_role_permissions(Role.MANAGER)]
        assert ids == [pid for pid in catalog_order if pid in ids]
        assert 'crm.clients.delete' not in ids

    def test_unknown_role_has_no_permissions(self):
        assert get_role_permissions('intruder') == []

    def test_validate_access_requires_all(self):
        assert validate_access(Role.ADMIN, ['users.view', 'system.security']) is True
        assert validate_access(Role.MANAGER, ['users.view', 'system.security']) is False
        assert validate_access(None, []) is False

    def test_get_permission(self):
        assert get_permission('system.security').category == 'System'
        assert get_permission('missing') is None

    def test_categories_group_every_entry(self):
        grouped = get_permissions_by_category()
        assert list(grouped)[0] == 'CRM'
        assert sum(len(items) for items in grouped.values()) == len(PERMISSIONS)

    def test_resolve_role(self):
        assert resolve_role(' Admin ') is Role.ADMIN
        assert resolve_role(Role.AGENT) is Role.AGENT
        assert resolve_role('root') is None


class TestCatalogInvariants:

    def test_shipped_catalog_is_valid(self):
        validate_catalog()

    def test_higher_roles_are_supersets(self):
        ordered = list(Role)
        for lower, higher in zip(ordered, ordered[1:]):
            assert ROLE_PERMISSIONS[lower].permissions <= ROLE_PERMISSIONS[higher].permissions

    def test_unknown_permission_reference_is_rejected(self):
        broken = RolePermissionSet(
            Role.AGENT,
            ROLE_PERMISSIONS[Role.AGENT].permissions | {'crm.clients.teleport'},
            frozenset({Role.AGENT}),
        )
        with patch.dict(ROLE_PERMISSIONS, {Role.AGENT: broken}):
            with pytest.raises(CatalogError):
                validate_catalog()

    def test_dropping_a_lower_role_permission_is_rejected(self):
        manager = ROLE_PERMISSIONS[Role.MANAGER]
        broken = RolePermissionSet(
            Role.MANAGER, manager.permissions - {'crm.access'}, manager.accessible_roles
        )
        with patch.dict(ROLE_PERMISSIONS, {Role.MANAGER: broken}):
            with pytest.raises(CatalogError):
                validate_catalog()

    def test_accessible_roles_must_be_self_and_lower(self):
        agent = ROLE_PERMISSIONS[Role.AGENT]
        broken = RolePermissionSet(
            Role.AGENT, agent.permissions, frozenset({Role.AGENT, Role.MANAGER})
        )
        with patch.dict(ROLE_PERMISSIONS, {Role.AGENT: broken}):
            with pytest.raises(CatalogError):
                validate_catalog()
