from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.service.errors import ErrorKind, NotFoundError
from warden.service.rbac import PermissionCheck, RBACEngine
from warden.service.results import Result
from warden.storage.models import (
    Identity,
    Module,
    ModuleAccess,
    Organization,
    OrganizationMember,
    OrganizationModule,
    OrganizationRole,
    Permission,
)

SUPER_ADMIN_ROLE = "super_admin"
OWNER_ROLE = "company_owner"
EMPLOYEE_ROLE = "employee"

MODULE_ACCESS_LEVELS = ("read", "write", "delete")


class PrivilegeTier(str, Enum):
    """Shortcut roles checked before fine-grained permissions."""

    SUPER_ADMIN = SUPER_ADMIN_ROLE
    ORGANIZATION_OWNER = OWNER_ROLE
    ORGANIZATION_MEMBER = EMPLOYEE_ROLE

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]


_TIER_LEVELS = {
    PrivilegeTier.SUPER_ADMIN: 0,
    PrivilegeTier.ORGANIZATION_OWNER: 1,
    PrivilegeTier.ORGANIZATION_MEMBER: 2,
}


class PolicyStore(Protocol):
    def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    def create_organization(self, name: str) -> Organization:
        ...

    def list_organizations(self) -> List[Organization]:
        ...

    def upsert_member(
        self,
        organization_id: str,
        identity_id: str,
        role: OrganizationRole,
        *,
        invited_by: Optional[str] = None,
    ) -> OrganizationMember:
        ...

    def get_member(self, organization_id: str, identity_id: str) -> Optional[OrganizationMember]:
        ...

    def list_memberships(self, identity_id: str) -> List[OrganizationMember]:
        ...

    def deactivate_member(self, organization_id: str, identity_id: str) -> bool:
        ...

    def get_module_by_name(self, name: str) -> Optional[Module]:
        ...

    def list_modules(self) -> List[Module]:
        ...

    def set_module_enabled(
        self,
        organization_id: str,
        module_id: str,
        enabled: bool,
        now: datetime,
        *,
        enabled_by: Optional[str] = None,
    ) -> OrganizationModule:
        ...

    def get_organization_module(
        self, organization_id: str, module_id: str
    ) -> Optional[OrganizationModule]:
        ...

    def upsert_module_access(self, access: ModuleAccess) -> ModuleAccess:
        ...

    def get_module_access(
        self, organization_id: str, identity_id: str, module_id: str
    ) -> Optional[ModuleAccess]:
        ...

    def delete_module_access(self, organization_id: str, identity_id: str, module_id: str) -> bool:
        ...

    def list_permissions(self) -> List[Permission]:
        ...


@dataclass(frozen=True)
class RoleRank:
    name: str
    level: int


@dataclass
class EffectivePermissions:
    identity_id: str
    organization_id: Optional[str]
    highest_role: Optional[RoleRank]
    permissions: List[str] = field(default_factory=list)
    modules: Dict[str, Dict[str, bool]] = field(default_factory=dict)


@dataclass(frozen=True)
class OrganizationAccess:
    organization: Organization
    role: str


class PolicyLayer:
    """Organization-aware authorization on top of :class:`RBACEngine`.

    Order of evaluation: super-admin (global ``super_admin`` role assignment)
    bypasses everything; an organization owner bypasses checks scoped to that
    organization; everything else falls through to RBAC or module grants.
    Errors while evaluating always deny.
    """

    def __init__(
        self,
        store: PolicyStore,
        rbac: RBACEngine,
        settings: Settings,
        *,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self.store = store
        self.rbac = rbac
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    # membership predicates
    def is_super_admin(self, identity_id: str) -> bool:
        try:
            return self.rbac.has_role(identity_id, SUPER_ADMIN_ROLE)
        except Exception as exc:
            self.logger.error("super_admin_check_failed", identity_id=identity_id, error=str(exc))
            return False

    def _active_member(self, identity_id: str, organization_id: Optional[str]) -> Optional[OrganizationMember]:
        if not organization_id:
            return None
        member = self.store.get_member(organization_id, identity_id)
        if member is None or not member.is_active:
            return None
        return member

    def is_organization_owner(self, identity_id: str, organization_id: str) -> bool:
        try:
            member = self._active_member(identity_id, organization_id)
        except Exception as exc:
            self.logger.error("membership_check_failed", identity_id=identity_id, error=str(exc))
            return False
        return member is not None and member.role == OrganizationRole.OWNER

    def is_organization_member(self, identity_id: str, organization_id: str) -> bool:
        try:
            return self._active_member(identity_id, organization_id) is not None
        except Exception as exc:
            self.logger.error("membership_check_failed", identity_id=identity_id, error=str(exc))
            return False

    # decisions
    def authorize(
        self,
        identity_id: str,
        required: PrivilegeTier,
        organization_id: Optional[str] = None,
    ) -> Result[PrivilegeTier]:
        required = PrivilegeTier(required)
        if self.is_super_admin(identity_id):
            return Result.success(PrivilegeTier.SUPER_ADMIN)
        detail = {"required_role": required.value}
        if required is PrivilegeTier.SUPER_ADMIN:
            return Result.fail(ErrorKind.PERMISSION_DENIED, "Super admin access required", **detail)
        if not organization_id:
            return Result.fail(ErrorKind.PERMISSION_DENIED, "Organization context required", **detail)
        try:
            member = self._active_member(identity_id, organization_id)
        except Exception as exc:
            self.logger.error("authorize_failed", identity_id=identity_id, error=str(exc))
            return Result.fail(ErrorKind.PERMISSION_DENIED, "Authorization could not be evaluated", **detail)
        if member is None:
            return Result.fail(ErrorKind.PERMISSION_DENIED, "Not a member of this organization", **detail)
        if member.role == OrganizationRole.OWNER:
            return Result.success(PrivilegeTier.ORGANIZATION_OWNER)
        if required is PrivilegeTier.ORGANIZATION_OWNER:
            return Result.fail(ErrorKind.PERMISSION_DENIED, "Organization owner access required", **detail)
        return Result.success(PrivilegeTier.ORGANIZATION_MEMBER)

    def check_permission(self, identity_id: str, check: PermissionCheck) -> Result[PermissionCheck]:
        if self.is_super_admin(identity_id):
            return Result.success(check)
        if check.organization_id and self.is_organization_owner(identity_id, check.organization_id):
            return Result.success(check)
        return self.rbac.check_permission(identity_id, check)

    def check_module_access(
        self,
        identity_id: str,
        organization_id: str,
        module_name: str,
        access: str = "read",
    ) -> Result[str]:
        detail = {"resource": module_name, "action": access}
        if access not in MODULE_ACCESS_LEVELS:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "Unknown module access level", **detail)
        if self.is_super_admin(identity_id):
            return Result.success(module_name)
        try:
            member = self._active_member(identity_id, organization_id)
            if member is None:
                return Result.fail(
                    ErrorKind.PERMISSION_DENIED, "Not a member of this organization", **detail
                )
            if member.role == OrganizationRole.OWNER:
                return Result.success(module_name)
            module = self.store.get_module_by_name(module_name)
            if module is None:
                return Result.fail(ErrorKind.PERMISSION_DENIED, "Unknown module", **detail)
            enabled = self.store.get_organization_module(organization_id, module.id)
            if enabled is None or not enabled.is_enabled:
                return Result.fail(
                    ErrorKind.PERMISSION_DENIED, "Module is not enabled for this organization", **detail
                )
            grant = self.store.get_module_access(organization_id, identity_id, module.id)
        except Exception as exc:
            self.logger.error(
                "module_access_check_failed", identity_id=identity_id, error=str(exc), **detail
            )
            return Result.fail(ErrorKind.PERMISSION_DENIED, "Authorization could not be evaluated", **detail)
        if grant is None or not grant.is_effective(self.clock.now()):
            return Result.fail(ErrorKind.PERMISSION_DENIED, "No access to this module", **detail)
        if not grant.allows(access):
            return Result.fail(ErrorKind.PERMISSION_DENIED, f"No {access} access to this module", **detail)
        return Result.success(module_name)

    def highest_role(self, identity_id: str, organization_id: Optional[str] = None) -> Optional[RoleRank]:
        if self.is_super_admin(identity_id):
            return RoleRank(SUPER_ADMIN_ROLE, PrivilegeTier.SUPER_ADMIN.level)
        if organization_id:
            member = self._active_member(identity_id, organization_id)
            if member is not None and member.role == OrganizationRole.OWNER:
                return RoleRank(OWNER_ROLE, PrivilegeTier.ORGANIZATION_OWNER.level)
            if member is not None:
                return RoleRank(EMPLOYEE_ROLE, PrivilegeTier.ORGANIZATION_MEMBER.level)
        role = self.rbac.highest_role(identity_id, organization_id)
        return RoleRank(role.name, role.level) if role else None

    def effective_permissions(
        self, identity_id: str, organization_id: Optional[str] = None
    ) -> EffectivePermissions:
        result = EffectivePermissions(
            identity_id=identity_id,
            organization_id=organization_id,
            highest_role=self.highest_role(identity_id, organization_id),
        )
        full = {level: True for level in MODULE_ACCESS_LEVELS}
        if self.is_super_admin(identity_id):
            result.permissions = [p.name for p in self.store.list_permissions()]
            result.modules = {m.name: dict(full) for m in self.store.list_modules()}
            return result
        result.permissions = [p.name for p in self.rbac.resolve_permissions(identity_id, organization_id)]
        if not organization_id:
            return result
        member = self._active_member(identity_id, organization_id)
        if member is None:
            return result
        now = self.clock.now()
        for module in self.store.list_modules():
            enabled = self.store.get_organization_module(organization_id, module.id)
            if enabled is None or not enabled.is_enabled:
                continue
            if member.role == OrganizationRole.OWNER:
                result.modules[module.name] = dict(full)
                continue
            grant = self.store.get_module_access(organization_id, identity_id, module.id)
            if grant is not None and grant.is_effective(now):
                result.modules[module.name] = {
                    level: grant.allows(level) for level in MODULE_ACCESS_LEVELS
                }
        return result

    def accessible_organizations(self, identity_id: str) -> List[OrganizationAccess]:
        if self.is_super_admin(identity_id):
            return [
                OrganizationAccess(org, SUPER_ADMIN_ROLE) for org in self.store.list_organizations()
            ]
        found: List[OrganizationAccess] = []
        for member in self.store.list_memberships(identity_id):
            if not member.is_active:
                continue
            org = self.store.get_organization(member.organization_id)
            if org is not None and org.is_active:
                found.append(OrganizationAccess(org, member.role.value))
        return found

    # raising guards
    def require_super_admin(self, identity_id: str) -> None:
        self.authorize(identity_id, PrivilegeTier.SUPER_ADMIN).unwrap()

    def require_organization_owner(self, identity_id: str, organization_id: str) -> None:
        self.authorize(identity_id, PrivilegeTier.ORGANIZATION_OWNER, organization_id).unwrap()

    def require_organization_member(self, identity_id: str, organization_id: str) -> None:
        self.authorize(identity_id, PrivilegeTier.ORGANIZATION_MEMBER, organization_id).unwrap()

    # bootstrap
    def initialize_identity_roles(self, identity: Identity) -> Optional[str]:
        """Give a fresh identity its starting role; returns the role assigned, if any."""
        admin_email = self.settings.super_admin_email
        if admin_email and identity.email.lower() == admin_email:
            if not self.rbac.has_role(identity.id, SUPER_ADMIN_ROLE):
                self.rbac.assign_role(identity.id, SUPER_ADMIN_ROLE, allow_system=True)
                self.logger.info("super_admin_bootstrapped", identity_id=identity.id)
                return SUPER_ADMIN_ROLE
            return None
        if self.rbac.get_roles(identity.id):
            return None
        try:
            self.rbac.assign_role(identity.id, EMPLOYEE_ROLE, allow_system=True)
        except NotFoundError:
            self.logger.warning("default_role_missing", role=EMPLOYEE_ROLE)
            return None
        return EMPLOYEE_ROLE

    # organization administration
    def create_organization(self, name: str, owner_id: str) -> Organization:
        """Create an organization owned by ``owner_id`` with core modules enabled."""
        organization = self.store.create_organization(name)
        self.store.upsert_member(organization.id, owner_id, OrganizationRole.OWNER)
        for module in self.store.list_modules():
            if module.is_core:
                self.store.set_module_enabled(
                    organization.id, module.id, True, self.clock.now(), enabled_by=owner_id
                )
        self.logger.info("organization_created", organization_id=organization.id, owner_id=owner_id)
        return organization

    def add_member(
        self,
        organization_id: str,
        identity_id: str,
        role: OrganizationRole = OrganizationRole.EMPLOYEE,
        *,
        invited_by: Optional[str] = None,
    ) -> OrganizationMember:
        return self.store.upsert_member(
            organization_id, identity_id, OrganizationRole(role), invited_by=invited_by
        )

    def remove_member(self, organization_id: str, identity_id: str) -> bool:
        return self.store.deactivate_member(organization_id, identity_id)

    def set_module_enabled(
        self,
        organization_id: str,
        module_name: str,
        enabled: bool,
        *,
        enabled_by: Optional[str] = None,
    ) -> OrganizationModule:
        module = self._require_module(module_name)
        return self.store.set_module_enabled(
            organization_id, module.id, enabled, self.clock.now(), enabled_by=enabled_by
        )

    def grant_module_access(
        self,
        organization_id: str,
        identity_id: str,
        module_name: str,
        *,
        can_read: Optional[bool] = None,
        can_write: Optional[bool] = None,
        can_delete: Optional[bool] = None,
        expires_at: Optional[datetime] = None,
        granted_by: Optional[str] = None,
    ) -> ModuleAccess:
        """Create or update an employee's module grant; unspecified flags keep their value."""
        module = self._require_module(module_name)
        existing = self.store.get_module_access(organization_id, identity_id, module.id)
        access = ModuleAccess(
            organization_id=organization_id,
            identity_id=identity_id,
            module_id=module.id,
            can_read=_pick(can_read, existing.can_read if existing else True),
            can_write=_pick(can_write, existing.can_write if existing else False),
            can_delete=_pick(can_delete, existing.can_delete if existing else False),
            granted_by=granted_by,
            expires_at=expires_at,
            created_at=self.clock.now(),
        )
        return self.store.upsert_module_access(access)

    def revoke_module_access(self, organization_id: str, identity_id: str, module_name: str) -> bool:
        module = self._require_module(module_name)
        return self.store.delete_module_access(organization_id, identity_id, module.id)

    def _require_module(self, module_name: str) -> Module:
        module = self.store.get_module_by_name(module_name)
        if module is None:
            raise NotFoundError("Module not found", detail={"module": module_name})
        return module


def _pick(value: Optional[bool], fallback: bool) -> bool:
    return fallback if value is None else value


__all__ = [
    "EffectivePermissions",
    "OrganizationAccess",
    "PolicyLayer",
    "PolicyStore",
    "PrivilegeTier",
    "RoleRank",
]
