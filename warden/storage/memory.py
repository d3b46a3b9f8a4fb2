from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    AuditEvent,
    AuditQuery,
    BackupCode,
    CredentialToken,
    Identity,
    InvitationToken,
    LoginAttempt,
    MFAChallenge,
    MFAEnrollment,
    MFAMethod,
    Module,
    ModuleAccess,
    Organization,
    OrganizationMember,
    OrganizationModule,
    OrganizationRole,
    PasswordResetToken,
    Permission,
    PermissionGrant,
    Role,
    RoleAssignment,
    Session,
    TokenKind,
    new_id,
    utcnow,
)

_IDENTITY_FIELDS = frozenset(Identity.__dataclass_fields__) - {"id", "created_at"}


def _copy(obj):
    # Deep so dict fields such as audit snapshots never alias caller state
    return copy.deepcopy(obj) if obj is not None else None


class MemoryStore:
    """Thread-safe in-memory backing store for tests and local development.

    Every mutation happens under a single re-entrant lock, so each method is
    atomic with respect to the others. Callers receive copies; changing a
    returned object never changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        # RLock so compound operations can call the single-entity helpers
        self._data_lock = threading.RLock()
        self.identities: Dict[str, Identity] = {}
        self.tokens: Dict[str, CredentialToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[str, set[str]] = {}
        self.role_assignments: Dict[str, RoleAssignment] = {}
        self.permission_grants: Dict[str, PermissionGrant] = {}
        self.organizations: Dict[str, Organization] = {}
        self.members: Dict[Tuple[str, str], OrganizationMember] = {}
        self.modules: Dict[str, Module] = {}
        self.organization_modules: Dict[Tuple[str, str], OrganizationModule] = {}
        self.module_access: Dict[Tuple[str, str, str], ModuleAccess] = {}
        self.enrollments: Dict[str, MFAEnrollment] = {}
        self.challenges: Dict[str, MFAChallenge] = {}
        self.backup_codes: Dict[str, BackupCode] = {}
        self.invitations: Dict[str, InvitationToken] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self.audit_events: List[AuditEvent] = []

    # identities
    def create_identity(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        auth_provider: str = "local",
        provider_subject: Optional[str] = None,
        email_verified: bool = False,
        display_name: Optional[str] = None,
        is_active: bool = True,
    ) -> Identity:
        with self._data_lock:
            if any(existing.email == email for existing in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if provider_subject and self._find_by_provider(auth_provider, provider_subject):
                raise ConstraintViolation(
                    "provider subject already linked", {"field": "provider_subject"}
                )
            identity = Identity(
                id=new_id(),
                email=email,
                password_hash=password_hash,
                auth_provider=auth_provider,
                provider_subject=provider_subject,
                email_verified=email_verified,
                display_name=display_name,
                is_active=is_active,
            )
            self.identities[identity.id] = identity
            return _copy(identity)

    def _find_by_provider(self, provider: str, subject: str) -> Optional[Identity]:
        return next(
            (
                i
                for i in self.identities.values()
                if i.auth_provider == provider and i.provider_subject == subject
            ),
            None,
        )

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return _copy(self.identities.get(identity_id))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            return _copy(next((i for i in self.identities.values() if i.email == email), None))

    def get_identity_by_provider(self, provider: str, subject: str) -> Optional[Identity]:
        with self._data_lock:
            return _copy(self._find_by_provider(provider, subject))

    def list_identities(self, limit: int = 100) -> List[Identity]:
        with self._data_lock:
            ordered = sorted(self.identities.values(), key=lambda i: i.created_at, reverse=True)
            return [_copy(i) for i in ordered[:limit]]

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        unknown = set(fields) - _IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"unknown identity fields: {sorted(unknown)}")
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            if "email" in fields and any(
                other.email == fields["email"] and other.id != identity_id
                for other in self.identities.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in fields.items():
                setattr(identity, name, value)
            if "updated_at" not in fields:
                identity.updated_at = utcnow()
            return _copy(identity)

    def record_failed_login(
        self, identity_id: str, now: datetime, *, threshold: int, locked_until: datetime
    ) -> Optional[Identity]:
        """Increment the failure counter and lock the identity once it reaches ``threshold``."""
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.failed_login_attempts += 1
            identity.updated_at = now
            if identity.failed_login_attempts >= threshold:
                identity.is_locked = True
                identity.locked_until = locked_until
            return _copy(identity)

    # refresh / remember-me tokens
    def create_token(self, token: CredentialToken) -> CredentialToken:
        with self._data_lock:
            if token.identity_id not in self.identities:
                raise ConstraintViolation("identity does not exist", {"identity_id": token.identity_id})
            if any(t.token_digest == token.token_digest for t in self.tokens.values()):
                raise ConstraintViolation("token digest collision", {"field": "token_digest"})
            self.tokens[token.id] = _copy(token)
            return _copy(token)

    def get_token(self, token_id: str) -> Optional[CredentialToken]:
        with self._data_lock:
            return _copy(self.tokens.get(token_id))

    def get_token_by_digest(self, digest: str, kind: TokenKind) -> Optional[CredentialToken]:
        with self._data_lock:
            return _copy(
                next(
                    (t for t in self.tokens.values() if t.token_digest == digest and t.kind == kind),
                    None,
                )
            )

    def revoke_token(
        self, token_id: str, now: datetime, *, replaced_by: Optional[str] = None
    ) -> bool:
        """Revoke ``token_id`` if it is not already revoked; True when this call revoked it."""
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or token.revoked:
                return False
            token.revoked = True
            token.revoked_at = now
            token.replaced_by = replaced_by
            return True

    def revoke_identity_tokens(
        self, identity_id: str, now: datetime, kind: Optional[TokenKind] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.tokens.values():
                if token.identity_id != identity_id or token.revoked:
                    continue
                if kind is not None and token.kind != kind:
                    continue
                token.revoked = True
                token.revoked_at = now
                count += 1
            return count

    def list_tokens(
        self, identity_id: str, kind: Optional[TokenKind] = None
    ) -> List[CredentialToken]:
        with self._data_lock:
            found = [
                t
                for t in self.tokens.values()
                if t.identity_id == identity_id and (kind is None or t.kind == kind)
            ]
            return [_copy(t) for t in sorted(found, key=lambda t: t.created_at, reverse=True)]

    def delete_expired_tokens(self, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            counts = {kind.value: 0 for kind in TokenKind}
            for token_id, token in list(self.tokens.items()):
                if token.expires_at <= now:
                    counts[token.kind.value] += 1
                    del self.tokens[token_id]
            return counts

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity does not exist", {"identity_id": session.identity_id}
                )
            self.sessions[session.id] = _copy(session)
            return _copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return _copy(self.sessions.get(session_id))

    def get_session_by_refresh_token(self, refresh_token_id: str) -> Optional[Session]:
        with self._data_lock:
            return _copy(
                next(
                    (s for s in self.sessions.values() if s.refresh_token_id == refresh_token_id),
                    None,
                )
            )

    def touch_session(
        self, session_id: str, now: datetime, expires_at: datetime
    ) -> Optional[Session]:
        """Record activity on a live session; expiry only ever moves forward."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_live(now):
                return None
            session.last_activity_at = max(session.last_activity_at, now)
            session.expires_at = max(session.expires_at, expires_at)
            return _copy(session)

    def rebind_session(self, session_id: str, refresh_token_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            session.refresh_token_id = refresh_token_id
            return _copy(session)

    def revoke_session(self, session_id: str, now: datetime, reason: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.revoked_at is not None:
                return False
            session.revoked_at = now
            session.revocation_reason = reason
            return True

    def revoke_identity_sessions(self, identity_id: str, now: datetime, reason: str) -> int:
        with self._data_lock:
            count = 0
            for session in self.sessions.values():
                if session.identity_id == identity_id and session.revoked_at is None:
                    session.revoked_at = now
                    session.revocation_reason = reason
                    count += 1
            return count

    def list_sessions(
        self, *, identity_id: Optional[str] = None, live_at: Optional[datetime] = None
    ) -> List[Session]:
        with self._data_lock:
            found = [
                s
                for s in self.sessions.values()
                if (identity_id is None or s.identity_id == identity_id)
                and (live_at is None or s.is_live(live_at))
            ]
            return [_copy(s) for s in sorted(found, key=lambda s: s.last_activity_at, reverse=True)]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.expires_at <= now or s.revoked_at is not None
            ]
            for sid in stale:
                del self.sessions[sid]
            return len(stale)

    # login attempt ledger
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(_copy(attempt))
            return _copy(attempt)

    def list_login_attempts(
        self,
        *,
        scope: str = "login",
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
    ) -> List[LoginAttempt]:
        with self._data_lock:
            found = [
                a
                for a in self.login_attempts
                if a.scope == scope
                and (email is None or a.email == email)
                and (ip_address is None or a.ip_address == ip_address)
                and (since is None or a.attempted_at >= since)
                and (success is None or a.success == success)
            ]
            return [_copy(a) for a in sorted(found, key=lambda a: a.attempted_at)]

    def clear_login_attempts(
        self, email: str, ip_address: Optional[str] = None, *, scope: str = "login"
    ) -> int:
        with self._data_lock:
            keep: List[LoginAttempt] = []
            removed = 0
            for attempt in self.login_attempts:
                if (
                    attempt.scope == scope
                    and not attempt.success
                    and attempt.email == email
                    and (ip_address is None or attempt.ip_address == ip_address)
                ):
                    removed += 1
                    continue
                keep.append(attempt)
            self.login_attempts = keep
            return removed

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [a for a in self.login_attempts if a.attempted_at >= cutoff]
            return before - len(self.login_attempts)

    # roles and permissions
    def create_role(
        self,
        name: str,
        *,
        level: int = 0,
        description: Optional[str] = None,
        parent_role_id: Optional[str] = None,
        is_system: bool = False,
        is_assignable: bool = True,
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"name": name})
            role = Role(
                id=new_id(),
                name=name,
                level=level,
                description=description,
                parent_role_id=parent_role_id,
                is_system=is_system,
                is_assignable=is_assignable,
            )
            self.roles[role.id] = role
            self.role_permissions.setdefault(role.id, set())
            return _copy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return _copy(self.roles.get(role_id))

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return _copy(next((r for r in self.roles.values() if r.name == name), None))

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [_copy(r) for r in sorted(self.roles.values(), key=lambda r: (r.level, r.name))]

    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"name": name})
            permission = Permission(
                id=new_id(), name=name, resource=resource, action=action, description=description
            )
            self.permissions[permission.id] = permission
            return _copy(permission)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return _copy(self.permissions.get(permission_id))

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            return _copy(next((p for p in self.permissions.values() if p.name == name), None))

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return [_copy(p) for p in sorted(self.permissions.values(), key=lambda p: p.name)]

    def attach_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "role or permission does not exist",
                    {"role_id": role_id, "permission_id": permission_id},
                )
            self.role_permissions.setdefault(role_id, set()).add(permission_id)

    def detach_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            attached = self.role_permissions.get(role_id, set())
            if permission_id not in attached:
                return False
            attached.discard(permission_id)
            return True

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            ids = self.role_permissions.get(role_id, set())
            return [_copy(self.permissions[pid]) for pid in sorted(ids) if pid in self.permissions]

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
        """Create or refresh the assignment for (identity, role, organization)."""
        with self._data_lock:
            if identity_id not in self.identities or role_id not in self.roles:
                raise ConstraintViolation(
                    "identity or role does not exist",
                    {"identity_id": identity_id, "role_id": role_id},
                )
            for existing in self.role_assignments.values():
                if (
                    existing.identity_id == identity_id
                    and existing.role_id == role_id
                    and existing.organization_id == organization_id
                ):
                    existing.valid_from = valid_from
                    existing.valid_until = valid_until
                    existing.assigned_by = assigned_by or existing.assigned_by
                    return _copy(existing)
            assignment = RoleAssignment(
                id=new_id(),
                identity_id=identity_id,
                role_id=role_id,
                organization_id=organization_id,
                valid_from=valid_from,
                valid_until=valid_until,
                assigned_by=assigned_by,
            )
            self.role_assignments[assignment.id] = assignment
            return _copy(assignment)

    def unassign_role(
        self, identity_id: str, role_id: str, organization_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            for assignment_id, existing in list(self.role_assignments.items()):
                if (
                    existing.identity_id == identity_id
                    and existing.role_id == role_id
                    and existing.organization_id == organization_id
                ):
                    del self.role_assignments[assignment_id]
                    return True
            return False

    def list_role_assignments(self, identity_id: str) -> List[RoleAssignment]:
        with self._data_lock:
            return [
                _copy(a) for a in self.role_assignments.values() if a.identity_id == identity_id
            ]

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
        with self._data_lock:
            if identity_id not in self.identities or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "identity or permission does not exist",
                    {"identity_id": identity_id, "permission_id": permission_id},
                )
            for grant in self.permission_grants.values():
                if (
                    grant.identity_id == identity_id
                    and grant.permission_id == permission_id
                    and grant.organization_id == organization_id
                    and grant.resource_id == resource_id
                ):
                    grant.is_granted = is_granted
                    grant.granted_by = granted_by
                    grant.expires_at = expires_at
                    return _copy(grant)
            grant = PermissionGrant(
                id=new_id(),
                identity_id=identity_id,
                permission_id=permission_id,
                is_granted=is_granted,
                organization_id=organization_id,
                resource_id=resource_id,
                granted_by=granted_by,
                expires_at=expires_at,
            )
            self.permission_grants[grant.id] = grant
            return _copy(grant)

    def delete_permission_grant(
        self,
        identity_id: str,
        permission_id: str,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            for grant_id, grant in list(self.permission_grants.items()):
                if (
                    grant.identity_id == identity_id
                    and grant.permission_id == permission_id
                    and grant.organization_id == organization_id
                    and grant.resource_id == resource_id
                ):
                    del self.permission_grants[grant_id]
                    return True
            return False

    def list_permission_grants(self, identity_id: str) -> List[PermissionGrant]:
        with self._data_lock:
            return [
                _copy(g) for g in self.permission_grants.values() if g.identity_id == identity_id
            ]

    # organizations, membership and modules
    def create_organization(self, name: str) -> Organization:
        with self._data_lock:
            organization = Organization(id=new_id(), name=name)
            self.organizations[organization.id] = organization
            return _copy(organization)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            return _copy(self.organizations.get(organization_id))

    def list_organizations(self) -> List[Organization]:
        with self._data_lock:
            return [_copy(o) for o in sorted(self.organizations.values(), key=lambda o: o.name)]

    def upsert_member(
        self,
        organization_id: str,
        identity_id: str,
        role: OrganizationRole,
        *,
        invited_by: Optional[str] = None,
    ) -> OrganizationMember:
        with self._data_lock:
            return _copy(self._upsert_member(organization_id, identity_id, role, invited_by))

    def _upsert_member(
        self,
        organization_id: str,
        identity_id: str,
        role: OrganizationRole,
        invited_by: Optional[str],
    ) -> OrganizationMember:
        if organization_id not in self.organizations or identity_id not in self.identities:
            raise ConstraintViolation(
                "organization or identity does not exist",
                {"organization_id": organization_id, "identity_id": identity_id},
            )
        key = (organization_id, identity_id)
        member = self.members.get(key)
        if member:
            member.role = role
            member.is_active = True
            return member
        member = OrganizationMember(
            organization_id=organization_id,
            identity_id=identity_id,
            role=role,
            invited_by=invited_by,
        )
        self.members[key] = member
        return member

    def get_member(self, organization_id: str, identity_id: str) -> Optional[OrganizationMember]:
        with self._data_lock:
            return _copy(self.members.get((organization_id, identity_id)))

    def list_memberships(self, identity_id: str) -> List[OrganizationMember]:
        with self._data_lock:
            return [_copy(m) for m in self.members.values() if m.identity_id == identity_id]

    def list_members(self, organization_id: str) -> List[OrganizationMember]:
        with self._data_lock:
            return [_copy(m) for m in self.members.values() if m.organization_id == organization_id]

    def deactivate_member(self, organization_id: str, identity_id: str) -> bool:
        with self._data_lock:
            member = self.members.get((organization_id, identity_id))
            if not member or not member.is_active:
                return False
            member.is_active = False
            return True

    def create_module(
        self,
        name: str,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        is_core: bool = False,
    ) -> Module:
        with self._data_lock:
            if any(m.name == name for m in self.modules.values()):
                raise ConstraintViolation("module already exists", {"name": name})
            module = Module(
                id=new_id(),
                name=name,
                display_name=display_name,
                description=description,
                is_core=is_core,
            )
            self.modules[module.id] = module
            return _copy(module)

    def get_module_by_name(self, name: str) -> Optional[Module]:
        with self._data_lock:
            return _copy(next((m for m in self.modules.values() if m.name == name), None))

    def list_modules(self) -> List[Module]:
        with self._data_lock:
            return [_copy(m) for m in sorted(self.modules.values(), key=lambda m: m.name)]

    def set_module_enabled(
        self,
        organization_id: str,
        module_id: str,
        enabled: bool,
        now: datetime,
        *,
        enabled_by: Optional[str] = None,
    ) -> OrganizationModule:
        with self._data_lock:
            if organization_id not in self.organizations or module_id not in self.modules:
                raise ConstraintViolation(
                    "organization or module does not exist",
                    {"organization_id": organization_id, "module_id": module_id},
                )
            entry = OrganizationModule(
                organization_id=organization_id,
                module_id=module_id,
                is_enabled=enabled,
                enabled_by=enabled_by,
                updated_at=now,
            )
            self.organization_modules[(organization_id, module_id)] = entry
            return _copy(entry)

    def get_organization_module(
        self, organization_id: str, module_id: str
    ) -> Optional[OrganizationModule]:
        with self._data_lock:
            return _copy(self.organization_modules.get((organization_id, module_id)))

    def upsert_module_access(self, access: ModuleAccess) -> ModuleAccess:
        with self._data_lock:
            key = (access.organization_id, access.identity_id, access.module_id)
            self.module_access[key] = _copy(access)
            return _copy(access)

    def get_module_access(
        self, organization_id: str, identity_id: str, module_id: str
    ) -> Optional[ModuleAccess]:
        with self._data_lock:
            return _copy(self.module_access.get((organization_id, identity_id, module_id)))

    def list_module_access(self, organization_id: str, identity_id: str) -> List[ModuleAccess]:
        with self._data_lock:
            return [
                _copy(a)
                for (org_id, ident_id, _), a in self.module_access.items()
                if org_id == organization_id and ident_id == identity_id
            ]

    def delete_module_access(self, organization_id: str, identity_id: str, module_id: str) -> bool:
        with self._data_lock:
            return self.module_access.pop((organization_id, identity_id, module_id), None) is not None

    # mfa
    def save_enrollment(self, enrollment: MFAEnrollment) -> MFAEnrollment:
        """Insert or replace the enrollment for (identity, method)."""
        with self._data_lock:
            self._put_enrollment(enrollment)
            return _copy(enrollment)

    def _put_enrollment(self, enrollment: MFAEnrollment) -> None:
        if enrollment.identity_id not in self.identities:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": enrollment.identity_id}
            )
        for existing_id, existing in list(self.enrollments.items()):
            if (
                existing.identity_id == enrollment.identity_id
                and existing.method == enrollment.method
            ):
                del self.enrollments[existing_id]
        self.enrollments[enrollment.id] = _copy(enrollment)

    def get_enrollment(self, identity_id: str, method: MFAMethod) -> Optional[MFAEnrollment]:
        with self._data_lock:
            return _copy(
                next(
                    (
                        e
                        for e in self.enrollments.values()
                        if e.identity_id == identity_id and e.method == method
                    ),
                    None,
                )
            )

    def list_enrollments(self, identity_id: str) -> List[MFAEnrollment]:
        with self._data_lock:
            found = [e for e in self.enrollments.values() if e.identity_id == identity_id]
            return [_copy(e) for e in sorted(found, key=lambda e: e.created_at)]

    def activate_enrollment(
        self, identity_id: str, method: MFAMethod, now: datetime
    ) -> Optional[MFAEnrollment]:
        """Mark an enrollment verified; it becomes primary only if no other verified one is."""
        with self._data_lock:
            target = None
            has_primary = False
            for enrollment in self.enrollments.values():
                if enrollment.identity_id != identity_id:
                    continue
                if enrollment.method == method:
                    target = enrollment
                elif enrollment.is_verified and enrollment.is_primary:
                    has_primary = True
            if target is None:
                return None
            if not target.is_verified:
                target.is_verified = True
                target.verified_at = now
                target.is_primary = not has_primary
            identity = self.identities.get(identity_id)
            if identity:
                identity.mfa_enabled = True
                identity.updated_at = now
            return _copy(target)

    def advance_totp_step(self, enrollment_id: str, step: int, now: datetime) -> bool:
        """Record ``step`` as used; False if it (or a later step) was already used."""
        with self._data_lock:
            enrollment = self.enrollments.get(enrollment_id)
            if not enrollment:
                return False
            if enrollment.last_totp_step is not None and step <= enrollment.last_totp_step:
                return False
            enrollment.last_totp_step = step
            enrollment.last_used_at = now
            return True

    def create_challenge(self, challenge: MFAChallenge) -> MFAChallenge:
        with self._data_lock:
            self.challenges[challenge.id] = _copy(challenge)
            return _copy(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        with self._data_lock:
            return _copy(self.challenges.get(challenge_id))

    def get_latest_challenge(
        self, identity_id: str, method: MFAMethod, *, purpose: Optional[str] = None
    ) -> Optional[MFAChallenge]:
        with self._data_lock:
            found = [
                c
                for c in self.challenges.values()
                if c.identity_id == identity_id
                and c.method == method
                and (purpose is None or c.purpose == purpose)
            ]
            if not found:
                return None
            return _copy(max(found, key=lambda c: c.created_at))

    def claim_challenge_attempt(self, challenge_id: str) -> bool:
        """Spend one attempt; False when none remain or the challenge is consumed."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.consumed_at is not None:
                return False
            if challenge.attempts_remaining <= 0:
                return False
            challenge.attempts_remaining -= 1
            return True

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.consumed_at is not None:
                return False
            challenge.consumed_at = now
            return True

    def replace_backup_codes(self, identity_id: str, codes: Sequence[BackupCode]) -> None:
        with self._data_lock:
            self._put_backup_codes(identity_id, codes)

    def _put_backup_codes(self, identity_id: str, codes: Sequence[BackupCode]) -> None:
        for code_id, code in list(self.backup_codes.items()):
            if code.identity_id == identity_id:
                del self.backup_codes[code_id]
        for code in codes:
            self.backup_codes[code.id] = _copy(code)

    def begin_totp_enrollment(
        self, enrollment: MFAEnrollment, codes: Sequence[BackupCode]
    ) -> MFAEnrollment:
        """Store a pending TOTP secret together with its fresh backup codes."""
        with self._data_lock:
            self._put_enrollment(enrollment)
            self._put_backup_codes(enrollment.identity_id, codes)
            return _copy(enrollment)

    def list_backup_codes(self, identity_id: str, *, unused_only: bool = True) -> List[BackupCode]:
        with self._data_lock:
            return [
                _copy(c)
                for c in self.backup_codes.values()
                if c.identity_id == identity_id and (not unused_only or not c.is_used)
            ]

    def consume_backup_code(self, code_id: str, now: datetime) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.is_used:
                return False
            code.is_used = True
            code.used_at = now
            return True

    def clear_mfa(self, identity_id: str, now: datetime) -> None:
        """Remove every enrollment, challenge and backup code and clear the MFA flag."""
        with self._data_lock:
            for table in (self.enrollments, self.challenges, self.backup_codes):
                for key, value in list(table.items()):
                    if value.identity_id == identity_id:
                        del table[key]
            identity = self.identities.get(identity_id)
            if identity:
                identity.mfa_enabled = False
                identity.updated_at = now

    # invitations
    def create_invitation(self, invitation: InvitationToken) -> InvitationToken:
        with self._data_lock:
            if invitation.organization_id not in self.organizations:
                raise ConstraintViolation(
                    "organization does not exist", {"organization_id": invitation.organization_id}
                )
            for existing in self.invitations.values():
                if existing.lookup_digest == invitation.lookup_digest:
                    raise ConstraintViolation("invitation digest collision", {"field": "lookup_digest"})
                if (
                    existing.email == invitation.email
                    and existing.organization_id == invitation.organization_id
                    and existing.is_live(invitation.created_at)
                ):
                    raise ConstraintViolation(
                        "live invitation already exists",
                        {"organization_id": invitation.organization_id},
                    )
            self.invitations[invitation.id] = _copy(invitation)
            return _copy(invitation)

    def get_invitation(self, invitation_id: str) -> Optional[InvitationToken]:
        with self._data_lock:
            return _copy(self.invitations.get(invitation_id))

    def get_invitation_by_digest(self, digest: str) -> Optional[InvitationToken]:
        with self._data_lock:
            return _copy(
                next((i for i in self.invitations.values() if i.lookup_digest == digest), None)
            )

    def find_live_invitation(
        self, email: str, organization_id: str, now: datetime
    ) -> Optional[InvitationToken]:
        with self._data_lock:
            return _copy(
                next(
                    (
                        i
                        for i in self.invitations.values()
                        if i.email == email
                        and i.organization_id == organization_id
                        and i.is_live(now)
                    ),
                    None,
                )
            )

    def redeem_invitation(
        self, invitation_id: str, identity_id: str, now: datetime
    ) -> Optional[OrganizationMember]:
        """Mark a live invitation used and add the membership in one step."""
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation or not invitation.is_live(now):
                return None
            member = self._upsert_member(
                invitation.organization_id,
                identity_id,
                invitation.role,
                invitation.invited_by,
            )
            invitation.is_used = True
            invitation.used_at = now
            invitation.used_by = identity_id
            return _copy(member)

    def revoke_invitation(self, invitation_id: str, now: datetime) -> bool:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation or invitation.is_used:
                return False
            invitation.is_used = True
            invitation.used_at = now
            return True

    def list_pending_invitations(self, organization_id: str, now: datetime) -> List[InvitationToken]:
        with self._data_lock:
            found = [
                i
                for i in self.invitations.values()
                if i.organization_id == organization_id and i.is_live(now)
            ]
            return [_copy(i) for i in sorted(found, key=lambda i: i.created_at, reverse=True)]

    def delete_expired_invitations(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                iid for iid, i in self.invitations.items() if not i.is_used and i.expires_at <= now
            ]
            for iid in stale:
                del self.invitations[iid]
            return len(stale)

    # password reset
    def save_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        """Store ``token`` as the identity's only reset token."""
        with self._data_lock:
            for token_id, existing in list(self.password_resets.items()):
                if existing.identity_id == token.identity_id:
                    del self.password_resets[token_id]
            self.password_resets[token.id] = _copy(token)
            return _copy(token)

    def consume_password_reset(self, digest: str, now: datetime) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for token in self.password_resets.values():
                if token.token_digest != digest:
                    continue
                if token.used_at is not None or token.expires_at <= now:
                    return None
                token.used_at = now
                return _copy(token)
            return None

    def delete_expired_password_resets(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, t in self.password_resets.items()
                if t.expires_at <= now or t.used_at is not None
            ]
            for tid in stale:
                del self.password_resets[tid]
            return len(stale)

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(_copy(event))
            return _copy(event)

    def query_audit_events(self, query: AuditQuery) -> List[AuditEvent]:
        with self._data_lock:
            found = [e for e in self.audit_events if query.matches(e)]
        found.sort(key=lambda e: e.created_at, reverse=True)
        end = None if query.limit is None else query.offset + query.limit
        return [_copy(e) for e in found[query.offset:end]]

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            before = len(self.audit_events)
            self.audit_events = [e for e in self.audit_events if e.created_at >= cutoff]
            return before - len(self.audit_events)


__all__ = ["MemoryStore"]
