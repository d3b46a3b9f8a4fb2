"""Tests for role-based permissions and the organization policy layer."""

from datetime import timedelta

import pytest

from warden.service.errors import ErrorKind, NotFoundError, PermissionDeniedError, ValidationError
from warden.service.policy import (
    EMPLOYEE_ROLE,
    OWNER_ROLE,
    SUPER_ADMIN_ROLE,
    PrivilegeTier,
)
from warden.service.rbac import PermissionCheck
from warden.storage.models import OrganizationRole


def _check(name, organization_id=None, resource_id=None):
    resource, action = name.split(".")
    return PermissionCheck(resource, action, organization_id=organization_id, resource_id=resource_id)


class TestRoles:
    def test_signup_assigns_employee(self, rbac, identity):
        assert [r.name for r in rbac.get_roles(identity.id)] == [EMPLOYEE_ROLE]

    def test_super_admin_is_not_directly_assignable(self, rbac, identity):
        with pytest.raises(ValidationError):
            rbac.assign_role(identity.id, SUPER_ADMIN_ROLE)

    def test_unknown_role(self, rbac, identity):
        with pytest.raises(NotFoundError):
            rbac.assign_role(identity.id, "wizard")

    def test_validity_window(self, rbac, identity, clock):
        rbac.assign_role(
            identity.id,
            OWNER_ROLE,
            valid_from=clock.now() + timedelta(hours=1),
            valid_until=clock.now() + timedelta(hours=2),
        )
        assert not rbac.has_role(identity.id, OWNER_ROLE)

        clock.advance(minutes=90)
        assert rbac.has_role(identity.id, OWNER_ROLE)

        clock.advance(hours=1)
        assert not rbac.has_role(identity.id, OWNER_ROLE)

    def test_inverted_window_is_rejected(self, rbac, identity, clock):
        with pytest.raises(ValidationError):
            rbac.assign_role(
                identity.id,
                OWNER_ROLE,
                valid_from=clock.now(),
                valid_until=clock.now() - timedelta(minutes=1),
            )

    def test_highest_role_has_lowest_level(self, rbac, identity):
        rbac.assign_role(identity.id, OWNER_ROLE)

        assert rbac.highest_role(identity.id).name == OWNER_ROLE

    def test_scoped_assignment_only_applies_in_its_organization(self, rbac, identity):
        rbac.assign_role(identity.id, OWNER_ROLE, organization_id="org-a")

        assert rbac.has_role(identity.id, OWNER_ROLE, "org-a")
        assert not rbac.has_role(identity.id, OWNER_ROLE, "org-b")
        assert not rbac.has_role(identity.id, OWNER_ROLE)

    def test_remove_role(self, rbac, identity):
        assert rbac.remove_role(identity.id, EMPLOYEE_ROLE) is True
        assert rbac.remove_role(identity.id, EMPLOYEE_ROLE) is False
        assert rbac.get_roles(identity.id) == []


class TestPermissions:
    def test_role_permissions_are_inherited_by_holder(self, rbac, identity):
        rbac.assign_role(identity.id, OWNER_ROLE)

        assert rbac.check_permission(identity.id, _check("invitations.send")).ok
        assert rbac.check_permission(identity.id, _check("users.delete")).kind is ErrorKind.PERMISSION_DENIED

    def test_direct_grant(self, rbac, identity):
        rbac.grant_permission(identity.id, "users.read")

        assert rbac.check_permission(identity.id, _check("users.read")).ok

    def test_denial_beats_role_permission(self, rbac, identity):
        rbac.assign_role(identity.id, OWNER_ROLE)
        rbac.deny_permission(identity.id, "invitations.send")

        result = rbac.check_permission(identity.id, _check("invitations.send"))

        assert result.failure.message == "Permission explicitly denied"
        assert "invitations.send" not in [p.name for p in rbac.resolve_permissions(identity.id)]

    def test_expired_grant_is_ignored(self, rbac, identity, clock):
        rbac.grant_permission(identity.id, "users.read", expires_at=clock.now() + timedelta(minutes=5))
        clock.advance(minutes=6)

        assert rbac.check_permission(identity.id, _check("users.read")).failure.message == "Insufficient permissions"

    def test_resource_scoped_grant(self, rbac, identity):
        rbac.grant_permission(identity.id, "users.update", resource_id="user-42")

        assert rbac.check_permission(identity.id, _check("users.update", resource_id="user-42")).ok
        assert not rbac.check_permission(identity.id, _check("users.update", resource_id="user-7")).ok

    def test_revoke_grant(self, rbac, identity):
        rbac.grant_permission(identity.id, "users.read")

        assert rbac.revoke_grant(identity.id, "users.read")
        assert not rbac.check_permission(identity.id, _check("users.read")).ok

    def test_any_and_all(self, rbac, identity):
        rbac.grant_permission(identity.id, "users.read")
        checks = [_check("users.delete"), _check("users.read")]

        assert rbac.check_any_permission(identity.id, checks).value.name == "users.read"
        assert rbac.check_all_permissions(identity.id, checks).kind is ErrorKind.PERMISSION_DENIED

    def test_unknown_permission(self, rbac, identity):
        with pytest.raises(NotFoundError):
            rbac.grant_permission(identity.id, "rockets.launch")


class TestSuperAdmin:
    def test_configured_email_becomes_super_admin(self, policy, admin):
        assert policy.is_super_admin(admin.id)
        assert policy.highest_role(admin.id).name == SUPER_ADMIN_ROLE

    def test_super_admin_passes_every_check(self, policy, admin, organization):
        org, _ = organization

        assert policy.check_permission(admin.id, _check("users.delete")).ok
        assert policy.authorize(admin.id, PrivilegeTier.ORGANIZATION_OWNER, org.id).value is PrivilegeTier.SUPER_ADMIN
        assert policy.check_module_access(admin.id, org.id, "invoices", "delete").ok

    def test_super_admin_sees_all_organizations(self, policy, admin, organization):
        org, _ = organization

        access = policy.accessible_organizations(admin.id)

        assert [(a.organization.id, a.role) for a in access] == [(org.id, SUPER_ADMIN_ROLE)]

    def test_require_super_admin_raises(self, policy, identity):
        with pytest.raises(PermissionDeniedError) as excinfo:
            policy.require_super_admin(identity.id)

        assert excinfo.value.message == "Super admin access required"


class TestOrganizations:
    def test_owner_shortcuts_scoped_permissions(self, policy, organization):
        org, owner = organization

        assert policy.check_permission(owner.id, _check("users.delete", org.id)).ok
        assert not policy.check_permission(owner.id, _check("users.delete")).ok

    def test_authorize_tiers(self, policy, identity, organization):
        org, owner = organization
        policy.add_member(org.id, identity.id)

        assert policy.authorize(owner.id, PrivilegeTier.ORGANIZATION_OWNER, org.id).ok
        assert policy.authorize(identity.id, PrivilegeTier.ORGANIZATION_MEMBER, org.id).ok
        denied = policy.authorize(identity.id, PrivilegeTier.ORGANIZATION_OWNER, org.id)
        assert denied.failure.message == "Organization owner access required"

    def test_authorize_without_context_or_membership(self, policy, identity, organization):
        org, _ = organization

        assert policy.authorize(identity.id, "employee").failure.message == "Organization context required"
        assert (
            policy.authorize(identity.id, PrivilegeTier.ORGANIZATION_MEMBER, org.id).failure.message
            == "Not a member of this organization"
        )

    def test_removed_member_loses_access(self, policy, identity, organization):
        org, _ = organization
        policy.add_member(org.id, identity.id)

        assert policy.remove_member(org.id, identity.id)
        assert not policy.is_organization_member(identity.id, org.id)
        assert policy.accessible_organizations(identity.id) == []

    def test_accessible_organizations_reports_member_role(self, policy, organization):
        org, owner = organization

        access = policy.accessible_organizations(owner.id)

        assert [(a.organization.name, a.role) for a in access] == [("Acme", OrganizationRole.OWNER.value)]


class TestModuleAccess:
    def test_employee_needs_a_grant(self, policy, identity, organization):
        org, owner = organization
        policy.add_member(org.id, identity.id)

        assert policy.check_module_access(identity.id, org.id, "invoices").failure.message == "No access to this module"

        policy.grant_module_access(org.id, identity.id, "invoices", granted_by=owner.id)

        assert policy.check_module_access(identity.id, org.id, "invoices").ok
        assert (
            policy.check_module_access(identity.id, org.id, "invoices", "write").failure.message
            == "No write access to this module"
        )

    def test_grant_update_keeps_unspecified_flags(self, policy, identity, organization):
        org, _ = organization
        policy.add_member(org.id, identity.id)
        policy.grant_module_access(org.id, identity.id, "invoices", can_write=True)

        updated = policy.grant_module_access(org.id, identity.id, "invoices", can_delete=True)

        assert (updated.can_read, updated.can_write, updated.can_delete) == (True, True, True)

    def test_disabled_module_blocks_employee_but_not_owner(self, policy, identity, organization):
        org, owner = organization
        policy.add_member(org.id, identity.id)
        policy.grant_module_access(org.id, identity.id, "reports")
        policy.set_module_enabled(org.id, "reports", False, enabled_by=owner.id)

        result = policy.check_module_access(identity.id, org.id, "reports")

        assert result.failure.message == "Module is not enabled for this organization"
        assert policy.check_module_access(owner.id, org.id, "reports", "delete").ok

    def test_expired_module_grant(self, policy, identity, organization, clock):
        org, _ = organization
        policy.add_member(org.id, identity.id)
        policy.grant_module_access(
            org.id, identity.id, "clients", expires_at=clock.now() + timedelta(days=1)
        )
        clock.advance(days=2)

        assert not policy.check_module_access(identity.id, org.id, "clients").ok

    def test_unknown_module_and_level(self, policy, identity, organization):
        org, _ = organization
        policy.add_member(org.id, identity.id)

        assert policy.check_module_access(identity.id, org.id, "rockets").failure.message == "Unknown module"
        assert policy.check_module_access(identity.id, org.id, "invoices", "admin").kind is ErrorKind.VALIDATION_ERROR

    def test_revoke_module_access(self, policy, identity, organization):
        org, _ = organization
        policy.add_member(org.id, identity.id)
        policy.grant_module_access(org.id, identity.id, "invoices")

        assert policy.revoke_module_access(org.id, identity.id, "invoices")
        assert not policy.check_module_access(identity.id, org.id, "invoices").ok


class TestEffectivePermissions:
    def test_employee_view(self, policy, identity, organization):
        org, _ = organization
        policy.add_member(org.id, identity.id)
        policy.grant_module_access(org.id, identity.id, "invoices", can_write=True)

        view = policy.effective_permissions(identity.id, org.id)

        assert view.highest_role.name == EMPLOYEE_ROLE
        assert view.permissions == []
        assert view.modules == {"invoices": {"read": True, "write": True, "delete": False}}

    def test_owner_view_lists_enabled_modules(self, policy, organization, clock):
        org, owner = organization
        clock.advance(minutes=7)
        toggled = policy.set_module_enabled(org.id, "settings", False)

        view = policy.effective_permissions(owner.id, org.id)

        assert view.highest_role.name == OWNER_ROLE
        assert "settings" not in view.modules
        assert view.modules["invoices"] == {"read": True, "write": True, "delete": True}
        assert toggled.updated_at == clock.now()

    def test_super_admin_view(self, policy, admin):
        view = policy.effective_permissions(admin.id)

        assert "roles.assign" in view.permissions
        assert set(view.modules) == {"clients", "dashboard", "expenses", "invoices", "reports", "settings"}


class TestInitializeRoles:
    def test_initialize_is_idempotent(self, policy, rbac, identity, store):
        assert policy.initialize_identity_roles(store.get_identity(identity.id)) is None
        assert [r.name for r in rbac.get_roles(identity.id)] == [EMPLOYEE_ROLE]

    def test_fresh_identity_gets_employee(self, policy, store):
        fresh = store.create_identity("fresh@example.com", None)

        assert policy.initialize_identity_roles(fresh) == EMPLOYEE_ROLE
