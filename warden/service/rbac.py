from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from warden.logging import get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.service.errors import ErrorKind, NotFoundError, ValidationError
from warden.service.results import Result
from warden.storage.models import Permission, PermissionGrant, Role, RoleAssignment


class RBACStore(Protocol):
    def get_role(self, role_id: str) -> Optional[Role]:
        ...

    def get_role_by_name(self, name: str) -> Optional[Role]:
        ...

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        ...

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        ...

    def assign_role(
        self,
        identity_id: str,
        role_id: str,
        *,
        organization_id: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
    ) -> RoleAssignment:
        ...

    def unassign_role(
        self, identity_id: str, role_id: str, organization_id: Optional[str] = None
    ) -> bool:
        ...

    def list_role_assignments(self, identity_id: str) -> List[RoleAssignment]:
        ...

    def upsert_permission_grant(
        self,
        identity_id: str,
        permission_id: str,
        *,
        is_granted: bool,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> PermissionGrant:
        ...

    def delete_permission_grant(
        self,
        identity_id: str,
        permission_id: str,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> bool:
        ...

    def list_permission_grants(self, identity_id: str) -> List[PermissionGrant]:
        ...


@dataclass(frozen=True)
class PermissionCheck:
    resource: str
    action: str
    organization_id: Optional[str] = None
    resource_id: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.resource}.{self.action}"


def _scope_matches(scope: Optional[str], requested: Optional[str]) -> bool:
    """A global (unscoped) row applies everywhere; a scoped row only to its organization."""
    return scope is None or scope == requested


def _resource_matches(row_resource: Optional[str], requested: Optional[str]) -> bool:
    return row_resource is None or row_resource == requested


class RBACEngine:
    """Flat role-based access control with per-identity grants and denials.

    Effective permissions = union of permissions of every role assignment in
    scope and within its validity window, plus direct grants in scope, minus
    direct denials in scope. A denial always wins. Parent roles are not
    inherited; ``Role.level`` only ranks roles.
    """

    def __init__(self, store: RBACStore, *, clock: Optional[ClockSource] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    # resolution
    def _effective_assignments(
        self, identity_id: str, organization_id: Optional[str]
    ) -> List[RoleAssignment]:
        now = self.clock.now()
        return [
            a
            for a in self.store.list_role_assignments(identity_id)
            if _scope_matches(a.organization_id, organization_id) and a.is_effective(now)
        ]

    def _effective_grants(
        self, identity_id: str, organization_id: Optional[str], resource_id: Optional[str]
    ) -> List[Tuple[PermissionGrant, Permission]]:
        now = self.clock.now()
        grants: List[Tuple[PermissionGrant, Permission]] = []
        for grant in self.store.list_permission_grants(identity_id):
            if not grant.is_effective(now):
                continue
            if not _scope_matches(grant.organization_id, organization_id):
                continue
            if not _resource_matches(grant.resource_id, resource_id):
                continue
            permission = self.store.get_permission(grant.permission_id)
            if permission is not None:
                grants.append((grant, permission))
        return grants

    def _resolve(
        self,
        identity_id: str,
        organization_id: Optional[str],
        resource_id: Optional[str] = None,
    ) -> Tuple[Dict[str, Permission], Dict[str, Permission]]:
        """Return (allowed, denied) permissions keyed by name."""
        allowed: Dict[str, Permission] = {}
        for assignment in self._effective_assignments(identity_id, organization_id):
            for permission in self.store.list_role_permissions(assignment.role_id):
                allowed[permission.name] = permission
        denied: Dict[str, Permission] = {}
        for grant, permission in self._effective_grants(identity_id, organization_id, resource_id):
            if grant.is_granted:
                allowed[permission.name] = permission
            else:
                denied[permission.name] = permission
        return allowed, denied

    def resolve_permissions(
        self, identity_id: str, organization_id: Optional[str] = None
    ) -> List[Permission]:
        allowed, denied = self._resolve(identity_id, organization_id)
        return sorted(
            (p for name, p in allowed.items() if name not in denied), key=lambda p: p.name
        )

    def check_permission(self, identity_id: str, check: PermissionCheck) -> Result[PermissionCheck]:
        detail = {"resource": check.resource, "action": check.action}
        try:
            allowed, denied = self._resolve(identity_id, check.organization_id, check.resource_id)
        except Exception as exc:
            self.logger.error(
                "permission_resolution_failed", identity_id=identity_id, error=str(exc), **detail
            )
            return Result.fail(
                ErrorKind.PERMISSION_DENIED, "Authorization could not be evaluated", **detail
            )

        def _matches(perms: Iterable[Permission]) -> bool:
            return any(p.resource == check.resource and p.action == check.action for p in perms)

        if _matches(denied.values()):
            return Result.fail(ErrorKind.PERMISSION_DENIED, "Permission explicitly denied", **detail)
        if _matches(allowed.values()):
            return Result.success(check)
        return Result.fail(ErrorKind.PERMISSION_DENIED, "Insufficient permissions", **detail)

    def check_any_permission(
        self, identity_id: str, checks: Sequence[PermissionCheck]
    ) -> Result[PermissionCheck]:
        last = None
        for check in checks:
            result = self.check_permission(identity_id, check)
            if result.ok:
                return result
            last = result
        return last or Result.fail(ErrorKind.PERMISSION_DENIED, "Insufficient permissions")

    def check_all_permissions(
        self, identity_id: str, checks: Sequence[PermissionCheck]
    ) -> Result[List[PermissionCheck]]:
        for check in checks:
            result = self.check_permission(identity_id, check)
            if not result.ok:
                return Result.from_failure(result.failure)
        return Result.success(list(checks))

    # roles
    def get_roles(self, identity_id: str, organization_id: Optional[str] = None) -> List[Role]:
        roles: Dict[str, Role] = {}
        for assignment in self._effective_assignments(identity_id, organization_id):
            role = self.store.get_role(assignment.role_id)
            if role is not None:
                roles[role.id] = role
        return sorted(roles.values(), key=lambda r: (r.level, r.name))

    def has_role(
        self, identity_id: str, role_name: str, organization_id: Optional[str] = None
    ) -> bool:
        return any(r.name == role_name for r in self.get_roles(identity_id, organization_id))

    def has_any_role(
        self, identity_id: str, role_names: Sequence[str], organization_id: Optional[str] = None
    ) -> bool:
        wanted = set(role_names)
        return any(r.name in wanted for r in self.get_roles(identity_id, organization_id))

    def highest_role(self, identity_id: str, organization_id: Optional[str] = None) -> Optional[Role]:
        """The held role with the lowest level (0 is most privileged)."""
        roles = self.get_roles(identity_id, organization_id)
        return roles[0] if roles else None

    def role_permissions(self, role_name: str) -> List[Permission]:
        return self.store.list_role_permissions(self._require_role(role_name).id)

    def assign_role(
        self,
        identity_id: str,
        role_name: str,
        *,
        organization_id: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
        allow_system: bool = False,
    ) -> RoleAssignment:
        role = self._require_role(role_name)
        if not role.is_assignable and not allow_system:
            raise ValidationError(
                "Role cannot be assigned directly", detail={"role": role_name}
            )
        if valid_from and valid_until and valid_until <= valid_from:
            raise ValidationError("valid_until must be after valid_from")
        assignment = self.store.assign_role(
            identity_id,
            role.id,
            organization_id=organization_id,
            valid_from=valid_from,
            valid_until=valid_until,
            assigned_by=assigned_by,
        )
        self.logger.info(
            "role_assigned",
            identity_id=identity_id,
            role=role_name,
            organization_id=organization_id,
        )
        return assignment

    def remove_role(
        self, identity_id: str, role_name: str, *, organization_id: Optional[str] = None
    ) -> bool:
        role = self._require_role(role_name)
        removed = self.store.unassign_role(identity_id, role.id, organization_id)
        if removed:
            self.logger.info(
                "role_removed", identity_id=identity_id, role=role_name, organization_id=organization_id
            )
        return removed

    # direct grants
    def grant_permission(
        self,
        identity_id: str,
        permission_name: str,
        *,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        granted_by: Optional[str] = None,
    ) -> PermissionGrant:
        return self._set_grant(
            identity_id,
            permission_name,
            True,
            organization_id=organization_id,
            resource_id=resource_id,
            expires_at=expires_at,
            granted_by=granted_by,
        )

    def deny_permission(
        self,
        identity_id: str,
        permission_name: str,
        *,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        granted_by: Optional[str] = None,
    ) -> PermissionGrant:
        return self._set_grant(
            identity_id,
            permission_name,
            False,
            organization_id=organization_id,
            resource_id=resource_id,
            expires_at=expires_at,
            granted_by=granted_by,
        )

    def revoke_grant(
        self,
        identity_id: str,
        permission_name: str,
        *,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> bool:
        permission = self._require_permission(permission_name)
        return self.store.delete_permission_grant(
            identity_id, permission.id, organization_id, resource_id
        )

    def _set_grant(
        self,
        identity_id: str,
        permission_name: str,
        is_granted: bool,
        **kwargs,
    ) -> PermissionGrant:
        permission = self._require_permission(permission_name)
        grant = self.store.upsert_permission_grant(
            identity_id, permission.id, is_granted=is_granted, **kwargs
        )
        self.logger.info(
            "permission_grant_set",
            identity_id=identity_id,
            permission=permission_name,
            is_granted=is_granted,
            organization_id=kwargs.get("organization_id"),
        )
        return grant

    def _require_role(self, role_name: str) -> Role:
        role = self.store.get_role_by_name(role_name)
        if role is None:
            raise NotFoundError("Role not found", detail={"role": role_name})
        return role

    def _require_permission(self, permission_name: str) -> Permission:
        permission = self.store.get_permission_by_name(permission_name)
        if permission is None:
            raise NotFoundError("Permission not found", detail={"permission": permission_name})
        return permission


__all__ = ["PermissionCheck", "RBACEngine", "RBACStore"]
