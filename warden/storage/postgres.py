from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import (
    AuditCategory,
    AuditEvent,
    AuditQuery,
    AuditResult,
    AuditSeverity,
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

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_IDENTITY_FIELDS = frozenset(Identity.__dataclass_fields__) - {"id", "created_at"}

REQUIRED_TABLES = (
    "app_identity",
    "credential_token",
    "auth_session",
    "login_attempt",
    "auth_role",
    "auth_permission",
    "role_permission",
    "role_assignment",
    "permission_grant",
    "organization",
    "organization_member",
    "app_module",
    "organization_module",
    "module_access",
    "mfa_enrollment",
    "mfa_challenge",
    "mfa_backup_code",
    "invitation",
    "password_reset",
    "audit_event",
)


def _hydrate(cls, row: Optional[Dict[str, Any]], **coerce):
    """Build dataclass ``cls`` from a dict row, converting the named columns."""
    if row is None:
        return None
    names = cls.__dataclass_fields__
    values = {key: value for key, value in row.items() if key in names}
    for key, convert in coerce.items():
        if values.get(key) is not None:
            values[key] = convert(values[key])
    return cls(**values)


def _json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store.

    Every state transition that must happen exactly once (token revocation,
    challenge attempts, backup-code use, invitation redemption, reset-token
    consumption) is a single conditional ``UPDATE ... RETURNING`` so concurrent
    callers cannot both win.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool: Optional[ConnectionPool] = None,
        min_size: int = 2,
        max_size: int = 10,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def install_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_PATH.read_text())

    def _verify_required_schema(self) -> None:
        try:
            with self._connect() as conn:
                missing = []
                for table in REQUIRED_TABLES:
                    row = conn.execute(
                        "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                    ).fetchone()
                    if not row or not row.get("oid"):
                        missing.append(table)
        except errors.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply warden/storage/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def _rowcount(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._connect() as conn:
            return conn.execute(sql, params).rowcount

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_identity (id, email, password_hash, auth_provider, provider_subject,
                                              email_verified, display_name, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity.id,
                        email,
                        password_hash,
                        auth_provider,
                        provider_subject,
                        email_verified,
                        display_name,
                        is_active,
                        identity.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return _hydrate(
            Identity, self._fetchone("SELECT * FROM app_identity WHERE id = %s", (identity_id,))
        )

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return _hydrate(
            Identity, self._fetchone("SELECT * FROM app_identity WHERE email = %s", (email,))
        )

    def get_identity_by_provider(self, provider: str, subject: str) -> Optional[Identity]:
        row = self._fetchone(
            "SELECT * FROM app_identity WHERE auth_provider = %s AND provider_subject = %s",
            (provider, subject),
        )
        return _hydrate(Identity, row)

    def list_identities(self, limit: int = 100) -> List[Identity]:
        rows = self._fetchall(
            "SELECT * FROM app_identity ORDER BY created_at DESC LIMIT %s", (limit,)
        )
        return [_hydrate(Identity, row) for row in rows]

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        unknown = set(fields) - _IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"unknown identity fields: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())
        # Column names come from the dataclass field whitelist above
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            row = self._fetchone(
                f"UPDATE app_identity SET {assignments} WHERE id = %s RETURNING *",
                (*fields.values(), identity_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _hydrate(Identity, row)

    def record_failed_login(
        self, identity_id: str, now: datetime, *, threshold: int, locked_until: datetime
    ) -> Optional[Identity]:
        row = self._fetchone(
            """
            UPDATE app_identity
            SET failed_login_attempts = failed_login_attempts + 1,
                is_locked = is_locked OR failed_login_attempts + 1 >= %s,
                locked_until = CASE WHEN failed_login_attempts + 1 >= %s THEN %s ELSE locked_until END,
                updated_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (threshold, threshold, locked_until, now, identity_id),
        )
        return _hydrate(Identity, row)

    # refresh / remember-me tokens
    def create_token(self, token: CredentialToken) -> CredentialToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO credential_token (id, identity_id, token_digest, kind, expires_at,
                                                  created_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.identity_id,
                        token.token_digest,
                        token.kind.value,
                        token.expires_at,
                        token.created_at,
                        token.user_agent,
                        token.ip_address,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token digest collision", {"field": "token_digest"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity does not exist", {"identity_id": token.identity_id})
        return token

    def get_token(self, token_id: str) -> Optional[CredentialToken]:
        row = self._fetchone("SELECT * FROM credential_token WHERE id = %s", (token_id,))
        return _hydrate(CredentialToken, row, kind=TokenKind)

    def get_token_by_digest(self, digest: str, kind: TokenKind) -> Optional[CredentialToken]:
        row = self._fetchone(
            "SELECT * FROM credential_token WHERE token_digest = %s AND kind = %s",
            (digest, kind.value),
        )
        return _hydrate(CredentialToken, row, kind=TokenKind)

    def revoke_token(
        self, token_id: str, now: datetime, *, replaced_by: Optional[str] = None
    ) -> bool:
        row = self._fetchone(
            """
            UPDATE credential_token SET revoked = TRUE, revoked_at = %s, replaced_by = %s
            WHERE id = %s AND NOT revoked
            RETURNING id
            """,
            (now, replaced_by, token_id),
        )
        return row is not None

    def revoke_identity_tokens(
        self, identity_id: str, now: datetime, kind: Optional[TokenKind] = None
    ) -> int:
        if kind is None:
            return self._rowcount(
                "UPDATE credential_token SET revoked = TRUE, revoked_at = %s WHERE identity_id = %s AND NOT revoked",
                (now, identity_id),
            )
        return self._rowcount(
            """
            UPDATE credential_token SET revoked = TRUE, revoked_at = %s
            WHERE identity_id = %s AND kind = %s AND NOT revoked
            """,
            (now, identity_id, kind.value),
        )

    def list_tokens(
        self, identity_id: str, kind: Optional[TokenKind] = None
    ) -> List[CredentialToken]:
        if kind is None:
            rows = self._fetchall(
                "SELECT * FROM credential_token WHERE identity_id = %s ORDER BY created_at DESC",
                (identity_id,),
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM credential_token WHERE identity_id = %s AND kind = %s ORDER BY created_at DESC",
                (identity_id, kind.value),
            )
        return [_hydrate(CredentialToken, row, kind=TokenKind) for row in rows]

    def delete_expired_tokens(self, now: datetime) -> Dict[str, int]:
        rows = self._fetchall(
            "DELETE FROM credential_token WHERE expires_at <= %s RETURNING kind", (now,)
        )
        counts = {kind.value: 0 for kind in TokenKind}
        for row in rows:
            counts[row["kind"]] = counts.get(row["kind"], 0) + 1
        return counts

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, identity_id, created_at, last_activity_at, expires_at,
                                              refresh_token_id, user_agent, ip_address, device_fingerprint)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.identity_id,
                        session.created_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.refresh_token_id,
                        session.user_agent,
                        session.ip_address,
                        session.device_fingerprint,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity does not exist", {"identity_id": session.identity_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return _hydrate(
            Session, self._fetchone("SELECT * FROM auth_session WHERE id = %s", (session_id,))
        )

    def get_session_by_refresh_token(self, refresh_token_id: str) -> Optional[Session]:
        row = self._fetchone(
            "SELECT * FROM auth_session WHERE refresh_token_id = %s", (refresh_token_id,)
        )
        return _hydrate(Session, row)

    def touch_session(
        self, session_id: str, now: datetime, expires_at: datetime
    ) -> Optional[Session]:
        row = self._fetchone(
            """
            UPDATE auth_session
            SET last_activity_at = GREATEST(last_activity_at, %s),
                expires_at = GREATEST(expires_at, %s)
            WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
            RETURNING *
            """,
            (now, expires_at, session_id, now),
        )
        return _hydrate(Session, row)

    def rebind_session(self, session_id: str, refresh_token_id: str) -> Optional[Session]:
        row = self._fetchone(
            "UPDATE auth_session SET refresh_token_id = %s WHERE id = %s RETURNING *",
            (refresh_token_id, session_id),
        )
        return _hydrate(Session, row)

    def revoke_session(self, session_id: str, now: datetime, reason: str) -> bool:
        row = self._fetchone(
            """
            UPDATE auth_session SET revoked_at = %s, revocation_reason = %s
            WHERE id = %s AND revoked_at IS NULL
            RETURNING id
            """,
            (now, reason, session_id),
        )
        return row is not None

    def revoke_identity_sessions(self, identity_id: str, now: datetime, reason: str) -> int:
        return self._rowcount(
            """
            UPDATE auth_session SET revoked_at = %s, revocation_reason = %s
            WHERE identity_id = %s AND revoked_at IS NULL
            """,
            (now, reason, identity_id),
        )

    def list_sessions(
        self, *, identity_id: Optional[str] = None, live_at: Optional[datetime] = None
    ) -> List[Session]:
        clauses, params = [], []
        if identity_id is not None:
            clauses.append("identity_id = %s")
            params.append(identity_id)
        if live_at is not None:
            clauses.append("revoked_at IS NULL AND expires_at > %s")
            params.append(live_at)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT * FROM auth_session {where} ORDER BY last_activity_at DESC", params
        )
        return [_hydrate(Session, row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        return self._rowcount(
            "DELETE FROM auth_session WHERE expires_at <= %s OR revoked_at IS NOT NULL", (now,)
        )

    # login attempt ledger
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, scope, email, ip_address, success, attempted_at, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.scope,
                    attempt.email,
                    attempt.ip_address,
                    attempt.success,
                    attempt.attempted_at,
                    attempt.user_agent,
                ),
            )
        return attempt

    def list_login_attempts(
        self,
        *,
        scope: str = "login",
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
    ) -> List[LoginAttempt]:
        clauses, params = ["scope = %s"], [scope]
        for column, value in (("email", email), ("ip_address", ip_address), ("success", success)):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if since is not None:
            clauses.append("attempted_at >= %s")
            params.append(since)
        rows = self._fetchall(
            f"SELECT * FROM login_attempt WHERE {' AND '.join(clauses)} ORDER BY attempted_at",
            params,
        )
        return [_hydrate(LoginAttempt, row) for row in rows]

    def clear_login_attempts(
        self, email: str, ip_address: Optional[str] = None, *, scope: str = "login"
    ) -> int:
        if ip_address is None:
            return self._rowcount(
                "DELETE FROM login_attempt WHERE scope = %s AND email = %s AND NOT success",
                (scope, email),
            )
        return self._rowcount(
            """
            DELETE FROM login_attempt
            WHERE scope = %s AND email = %s AND ip_address = %s AND NOT success
            """,
            (scope, email, ip_address),
        )

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        return self._rowcount("DELETE FROM login_attempt WHERE attempted_at < %s", (cutoff,))

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
        role = Role(
            id=new_id(),
            name=name,
            level=level,
            description=description,
            parent_role_id=parent_role_id,
            is_system=is_system,
            is_assignable=is_assignable,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_role (id, name, level, description, parent_role_id, is_system, is_assignable, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        role.id,
                        name,
                        level,
                        description,
                        parent_role_id,
                        is_system,
                        is_assignable,
                        role.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"name": name})
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        return _hydrate(Role, self._fetchone("SELECT * FROM auth_role WHERE id = %s", (role_id,)))

    def get_role_by_name(self, name: str) -> Optional[Role]:
        return _hydrate(Role, self._fetchone("SELECT * FROM auth_role WHERE name = %s", (name,)))

    def list_roles(self) -> List[Role]:
        return [_hydrate(Role, row) for row in self._fetchall("SELECT * FROM auth_role ORDER BY level, name")]

    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        permission = Permission(
            id=new_id(), name=name, resource=resource, action=action, description=description
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_permission (id, name, resource, action, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (permission.id, name, resource, action, description, permission.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"name": name})
        return permission

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        row = self._fetchone("SELECT * FROM auth_permission WHERE id = %s", (permission_id,))
        return _hydrate(Permission, row)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        row = self._fetchone("SELECT * FROM auth_permission WHERE name = %s", (name,))
        return _hydrate(Permission, row)

    def list_permissions(self) -> List[Permission]:
        rows = self._fetchall("SELECT * FROM auth_permission ORDER BY name")
        return [_hydrate(Permission, row) for row in rows]

    def attach_permission(self, role_id: str, permission_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )

    def detach_permission(self, role_id: str, permission_id: str) -> bool:
        return bool(
            self._rowcount(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
        )

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        rows = self._fetchall(
            """
            SELECT p.* FROM role_permission rp JOIN auth_permission p ON p.id = rp.permission_id
            WHERE rp.role_id = %s ORDER BY p.id
            """,
            (role_id,),
        )
        return [_hydrate(Permission, row) for row in rows]

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
        try:
            row = self._fetchone(
                """
                INSERT INTO role_assignment (id, identity_id, role_id, organization_id, valid_from,
                                             valid_until, assigned_by, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (identity_id, role_id, (COALESCE(organization_id, ''))) DO UPDATE
                SET valid_from = EXCLUDED.valid_from,
                    valid_until = EXCLUDED.valid_until,
                    assigned_by = COALESCE(EXCLUDED.assigned_by, role_assignment.assigned_by)
                RETURNING *
                """,
                (new_id(), identity_id, role_id, organization_id, valid_from, valid_until, assigned_by),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity or role does not exist", {"identity_id": identity_id, "role_id": role_id}
            )
        return _hydrate(RoleAssignment, row)

    def unassign_role(
        self, identity_id: str, role_id: str, organization_id: Optional[str] = None
    ) -> bool:
        return bool(
            self._rowcount(
                """
                DELETE FROM role_assignment
                WHERE identity_id = %s AND role_id = %s AND organization_id IS NOT DISTINCT FROM %s
                """,
                (identity_id, role_id, organization_id),
            )
        )

    def list_role_assignments(self, identity_id: str) -> List[RoleAssignment]:
        rows = self._fetchall(
            "SELECT * FROM role_assignment WHERE identity_id = %s", (identity_id,)
        )
        return [_hydrate(RoleAssignment, row) for row in rows]

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
        try:
            row = self._fetchone(
                """
                INSERT INTO permission_grant (id, identity_id, permission_id, is_granted, organization_id,
                                              resource_id, granted_by, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (identity_id, permission_id, (COALESCE(organization_id, '')), (COALESCE(resource_id, '')))
                DO UPDATE SET is_granted = EXCLUDED.is_granted,
                              granted_by = EXCLUDED.granted_by,
                              expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (
                    new_id(),
                    identity_id,
                    permission_id,
                    is_granted,
                    organization_id,
                    resource_id,
                    granted_by,
                    expires_at,
                ),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity or permission does not exist",
                {"identity_id": identity_id, "permission_id": permission_id},
            )
        return _hydrate(PermissionGrant, row)

    def delete_permission_grant(
        self,
        identity_id: str,
        permission_id: str,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> bool:
        return bool(
            self._rowcount(
                """
                DELETE FROM permission_grant
                WHERE identity_id = %s AND permission_id = %s
                  AND organization_id IS NOT DISTINCT FROM %s
                  AND resource_id IS NOT DISTINCT FROM %s
                """,
                (identity_id, permission_id, organization_id, resource_id),
            )
        )

    def list_permission_grants(self, identity_id: str) -> List[PermissionGrant]:
        rows = self._fetchall(
            "SELECT * FROM permission_grant WHERE identity_id = %s", (identity_id,)
        )
        return [_hydrate(PermissionGrant, row) for row in rows]

    # organizations, membership and modules
    def create_organization(self, name: str) -> Organization:
        organization = Organization(id=new_id(), name=name)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO organization (id, name, is_active, created_at) VALUES (%s, %s, %s, %s)",
                (organization.id, name, organization.is_active, organization.created_at),
            )
        return organization

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        row = self._fetchone("SELECT * FROM organization WHERE id = %s", (organization_id,))
        return _hydrate(Organization, row)

    def list_organizations(self) -> List[Organization]:
        rows = self._fetchall("SELECT * FROM organization ORDER BY name")
        return [_hydrate(Organization, row) for row in rows]

    _UPSERT_MEMBER_SQL = """
        INSERT INTO organization_member (organization_id, identity_id, role, is_active, invited_by, joined_at)
        VALUES (%s, %s, %s, TRUE, %s, now())
        ON CONFLICT (organization_id, identity_id) DO UPDATE
        SET role = EXCLUDED.role, is_active = TRUE
        RETURNING *
    """

    def upsert_member(
        self,
        organization_id: str,
        identity_id: str,
        role: OrganizationRole,
        *,
        invited_by: Optional[str] = None,
    ) -> OrganizationMember:
        try:
            row = self._fetchone(
                self._UPSERT_MEMBER_SQL,
                (organization_id, identity_id, OrganizationRole(role).value, invited_by),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organization or identity does not exist",
                {"organization_id": organization_id, "identity_id": identity_id},
            )
        return _hydrate(OrganizationMember, row, role=OrganizationRole)

    def get_member(self, organization_id: str, identity_id: str) -> Optional[OrganizationMember]:
        row = self._fetchone(
            "SELECT * FROM organization_member WHERE organization_id = %s AND identity_id = %s",
            (organization_id, identity_id),
        )
        return _hydrate(OrganizationMember, row, role=OrganizationRole)

    def list_memberships(self, identity_id: str) -> List[OrganizationMember]:
        rows = self._fetchall(
            "SELECT * FROM organization_member WHERE identity_id = %s", (identity_id,)
        )
        return [_hydrate(OrganizationMember, row, role=OrganizationRole) for row in rows]

    def list_members(self, organization_id: str) -> List[OrganizationMember]:
        rows = self._fetchall(
            "SELECT * FROM organization_member WHERE organization_id = %s", (organization_id,)
        )
        return [_hydrate(OrganizationMember, row, role=OrganizationRole) for row in rows]

    def deactivate_member(self, organization_id: str, identity_id: str) -> bool:
        return bool(
            self._rowcount(
                """
                UPDATE organization_member SET is_active = FALSE
                WHERE organization_id = %s AND identity_id = %s AND is_active
                """,
                (organization_id, identity_id),
            )
        )

    def create_module(
        self,
        name: str,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        is_core: bool = False,
    ) -> Module:
        module = Module(
            id=new_id(), name=name, display_name=display_name, description=description, is_core=is_core
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_module (id, name, display_name, description, is_core) VALUES (%s, %s, %s, %s, %s)",
                    (module.id, name, display_name, description, is_core),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("module already exists", {"name": name})
        return module

    def get_module_by_name(self, name: str) -> Optional[Module]:
        return _hydrate(Module, self._fetchone("SELECT * FROM app_module WHERE name = %s", (name,)))

    def list_modules(self) -> List[Module]:
        return [_hydrate(Module, row) for row in self._fetchall("SELECT * FROM app_module ORDER BY name")]

    def set_module_enabled(
        self,
        organization_id: str,
        module_id: str,
        enabled: bool,
        now: datetime,
        *,
        enabled_by: Optional[str] = None,
    ) -> OrganizationModule:
        try:
            row = self._fetchone(
                """
                INSERT INTO organization_module (organization_id, module_id, is_enabled, enabled_by, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (organization_id, module_id) DO UPDATE
                SET is_enabled = EXCLUDED.is_enabled, enabled_by = EXCLUDED.enabled_by,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (organization_id, module_id, enabled, enabled_by, now),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organization or module does not exist",
                {"organization_id": organization_id, "module_id": module_id},
            )
        return _hydrate(OrganizationModule, row)

    def get_organization_module(
        self, organization_id: str, module_id: str
    ) -> Optional[OrganizationModule]:
        row = self._fetchone(
            "SELECT * FROM organization_module WHERE organization_id = %s AND module_id = %s",
            (organization_id, module_id),
        )
        return _hydrate(OrganizationModule, row)

    def upsert_module_access(self, access: ModuleAccess) -> ModuleAccess:
        row = self._fetchone(
            """
            INSERT INTO module_access (organization_id, identity_id, module_id, can_read, can_write,
                                       can_delete, granted_by, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (organization_id, identity_id, module_id) DO UPDATE
            SET can_read = EXCLUDED.can_read, can_write = EXCLUDED.can_write,
                can_delete = EXCLUDED.can_delete, granted_by = EXCLUDED.granted_by,
                expires_at = EXCLUDED.expires_at
            RETURNING *
            """,
            (
                access.organization_id,
                access.identity_id,
                access.module_id,
                access.can_read,
                access.can_write,
                access.can_delete,
                access.granted_by,
                access.expires_at,
                access.created_at,
            ),
        )
        return _hydrate(ModuleAccess, row)

    def get_module_access(
        self, organization_id: str, identity_id: str, module_id: str
    ) -> Optional[ModuleAccess]:
        row = self._fetchone(
            """
            SELECT * FROM module_access
            WHERE organization_id = %s AND identity_id = %s AND module_id = %s
            """,
            (organization_id, identity_id, module_id),
        )
        return _hydrate(ModuleAccess, row)

    def list_module_access(self, organization_id: str, identity_id: str) -> List[ModuleAccess]:
        rows = self._fetchall(
            "SELECT * FROM module_access WHERE organization_id = %s AND identity_id = %s",
            (organization_id, identity_id),
        )
        return [_hydrate(ModuleAccess, row) for row in rows]

    def delete_module_access(self, organization_id: str, identity_id: str, module_id: str) -> bool:
        return bool(
            self._rowcount(
                """
                DELETE FROM module_access
                WHERE organization_id = %s AND identity_id = %s AND module_id = %s
                """,
                (organization_id, identity_id, module_id),
            )
        )

    # mfa
    @staticmethod
    def _write_enrollment(conn, enrollment: MFAEnrollment) -> None:
        conn.execute(
            "DELETE FROM mfa_enrollment WHERE identity_id = %s AND method = %s",
            (enrollment.identity_id, enrollment.method.value),
        )
        conn.execute(
            """
            INSERT INTO mfa_enrollment (id, identity_id, method, secret, destination, is_verified,
                                        is_primary, last_totp_step, created_at, verified_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                enrollment.id,
                enrollment.identity_id,
                enrollment.method.value,
                enrollment.secret,
                enrollment.destination,
                enrollment.is_verified,
                enrollment.is_primary,
                enrollment.last_totp_step,
                enrollment.created_at,
                enrollment.verified_at,
            ),
        )

    @staticmethod
    def _write_backup_codes(conn, identity_id: str, codes: Sequence[BackupCode]) -> None:
        conn.execute("DELETE FROM mfa_backup_code WHERE identity_id = %s", (identity_id,))
        for code in codes:
            conn.execute(
                """
                INSERT INTO mfa_backup_code (id, identity_id, code_hash, is_used, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (code.id, identity_id, code.code_hash, code.is_used, code.created_at),
            )

    def save_enrollment(self, enrollment: MFAEnrollment) -> MFAEnrollment:
        try:
            with self._connect() as conn:
                self._write_enrollment(conn, enrollment)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": enrollment.identity_id}
            )
        return enrollment

    def get_enrollment(self, identity_id: str, method: MFAMethod) -> Optional[MFAEnrollment]:
        row = self._fetchone(
            "SELECT * FROM mfa_enrollment WHERE identity_id = %s AND method = %s",
            (identity_id, MFAMethod(method).value),
        )
        return _hydrate(MFAEnrollment, row, method=MFAMethod)

    def list_enrollments(self, identity_id: str) -> List[MFAEnrollment]:
        rows = self._fetchall(
            "SELECT * FROM mfa_enrollment WHERE identity_id = %s ORDER BY created_at", (identity_id,)
        )
        return [_hydrate(MFAEnrollment, row, method=MFAMethod) for row in rows]

    def activate_enrollment(
        self, identity_id: str, method: MFAMethod, now: datetime
    ) -> Optional[MFAEnrollment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_enrollment WHERE identity_id = %s FOR UPDATE", (identity_id,)
            ).fetchall()
            target = next((r for r in rows if r["method"] == MFAMethod(method).value), None)
            if target is None:
                return None
            has_primary = any(
                r["is_verified"] and r["is_primary"] and r["id"] != target["id"] for r in rows
            )
            if not target["is_verified"]:
                target = conn.execute(
                    """
                    UPDATE mfa_enrollment SET is_verified = TRUE, verified_at = %s, is_primary = %s
                    WHERE id = %s RETURNING *
                    """,
                    (now, not has_primary, target["id"]),
                ).fetchone()
            conn.execute(
                "UPDATE app_identity SET mfa_enabled = TRUE, updated_at = %s WHERE id = %s",
                (now, identity_id),
            )
        return _hydrate(MFAEnrollment, target, method=MFAMethod)

    def advance_totp_step(self, enrollment_id: str, step: int, now: datetime) -> bool:
        row = self._fetchone(
            """
            UPDATE mfa_enrollment SET last_totp_step = %s, last_used_at = %s
            WHERE id = %s AND (last_totp_step IS NULL OR last_totp_step < %s)
            RETURNING id
            """,
            (step, now, enrollment_id, step),
        )
        return row is not None

    def create_challenge(self, challenge: MFAChallenge) -> MFAChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mfa_challenge (id, identity_id, method, expires_at, attempts_remaining,
                                           code_hash, purpose, created_at, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.identity_id,
                    challenge.method.value,
                    challenge.expires_at,
                    challenge.attempts_remaining,
                    challenge.code_hash,
                    challenge.purpose,
                    challenge.created_at,
                    _json(challenge.meta),
                ),
            )
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        row = self._fetchone("SELECT * FROM mfa_challenge WHERE id = %s", (challenge_id,))
        return _hydrate(MFAChallenge, row, method=MFAMethod)

    def get_latest_challenge(
        self, identity_id: str, method: MFAMethod, *, purpose: Optional[str] = None
    ) -> Optional[MFAChallenge]:
        row = self._fetchone(
            """
            SELECT * FROM mfa_challenge
            WHERE identity_id = %s AND method = %s AND (%s::text IS NULL OR purpose = %s)
            ORDER BY created_at DESC LIMIT 1
            """,
            (identity_id, MFAMethod(method).value, purpose, purpose),
        )
        return _hydrate(MFAChallenge, row, method=MFAMethod)

    def claim_challenge_attempt(self, challenge_id: str) -> bool:
        row = self._fetchone(
            """
            UPDATE mfa_challenge SET attempts_remaining = attempts_remaining - 1
            WHERE id = %s AND consumed_at IS NULL AND attempts_remaining > 0
            RETURNING id
            """,
            (challenge_id,),
        )
        return row is not None

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        row = self._fetchone(
            "UPDATE mfa_challenge SET consumed_at = %s WHERE id = %s AND consumed_at IS NULL RETURNING id",
            (now, challenge_id),
        )
        return row is not None

    def replace_backup_codes(self, identity_id: str, codes: Sequence[BackupCode]) -> None:
        with self._connect() as conn:
            self._write_backup_codes(conn, identity_id, codes)

    def begin_totp_enrollment(
        self, enrollment: MFAEnrollment, codes: Sequence[BackupCode]
    ) -> MFAEnrollment:
        # One connection block, so the secret and its codes commit together
        try:
            with self._connect() as conn:
                self._write_enrollment(conn, enrollment)
                self._write_backup_codes(conn, enrollment.identity_id, codes)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": enrollment.identity_id}
            )
        return enrollment

    def list_backup_codes(self, identity_id: str, *, unused_only: bool = True) -> List[BackupCode]:
        sql = "SELECT * FROM mfa_backup_code WHERE identity_id = %s"
        if unused_only:
            sql += " AND NOT is_used"
        return [_hydrate(BackupCode, row) for row in self._fetchall(sql, (identity_id,))]

    def consume_backup_code(self, code_id: str, now: datetime) -> bool:
        row = self._fetchone(
            "UPDATE mfa_backup_code SET is_used = TRUE, used_at = %s WHERE id = %s AND NOT is_used RETURNING id",
            (now, code_id),
        )
        return row is not None

    def clear_mfa(self, identity_id: str, now: datetime) -> None:
        with self._connect() as conn:
            for table in ("mfa_enrollment", "mfa_challenge", "mfa_backup_code"):
                conn.execute(f"DELETE FROM {table} WHERE identity_id = %s", (identity_id,))
            conn.execute(
                "UPDATE app_identity SET mfa_enabled = FALSE, updated_at = %s WHERE id = %s",
                (now, identity_id),
            )

    # invitations
    def create_invitation(self, invitation: InvitationToken) -> InvitationToken:
        try:
            with self._connect() as conn:
                # Serialize invites for the same (email, organization) so the
                # live-duplicate check and the insert cannot interleave
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"{invitation.organization_id}:{invitation.email}",),
                )
                live = conn.execute(
                    """
                    SELECT id FROM invitation
                    WHERE email = %s AND organization_id = %s AND NOT is_used AND expires_at > %s
                    """,
                    (invitation.email, invitation.organization_id, invitation.created_at),
                ).fetchone()
                if live:
                    raise ConstraintViolation(
                        "live invitation already exists",
                        {"organization_id": invitation.organization_id},
                    )
                conn.execute(
                    """
                    INSERT INTO invitation (id, email, organization_id, role, lookup_digest, token_hash,
                                            sealed_token, expires_at, invited_by, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        invitation.id,
                        invitation.email,
                        invitation.organization_id,
                        invitation.role.value,
                        invitation.lookup_digest,
                        invitation.token_hash,
                        invitation.sealed_token,
                        invitation.expires_at,
                        invitation.invited_by,
                        invitation.ip_address,
                        invitation.user_agent,
                        invitation.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation digest collision", {"field": "lookup_digest"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organization does not exist", {"organization_id": invitation.organization_id}
            )
        return invitation

    def get_invitation(self, invitation_id: str) -> Optional[InvitationToken]:
        row = self._fetchone("SELECT * FROM invitation WHERE id = %s", (invitation_id,))
        return _hydrate(InvitationToken, row, role=OrganizationRole)

    def get_invitation_by_digest(self, digest: str) -> Optional[InvitationToken]:
        row = self._fetchone("SELECT * FROM invitation WHERE lookup_digest = %s", (digest,))
        return _hydrate(InvitationToken, row, role=OrganizationRole)

    def find_live_invitation(
        self, email: str, organization_id: str, now: datetime
    ) -> Optional[InvitationToken]:
        row = self._fetchone(
            """
            SELECT * FROM invitation
            WHERE email = %s AND organization_id = %s AND NOT is_used AND expires_at > %s
            LIMIT 1
            """,
            (email, organization_id, now),
        )
        return _hydrate(InvitationToken, row, role=OrganizationRole)

    def redeem_invitation(
        self, invitation_id: str, identity_id: str, now: datetime
    ) -> Optional[OrganizationMember]:
        with self._connect() as conn:
            claimed = conn.execute(
                """
                UPDATE invitation SET is_used = TRUE, used_at = %s, used_by = %s
                WHERE id = %s AND NOT is_used AND expires_at > %s
                RETURNING organization_id, role, invited_by
                """,
                (now, identity_id, invitation_id, now),
            ).fetchone()
            if claimed is None:
                return None
            row = conn.execute(
                self._UPSERT_MEMBER_SQL,
                (claimed["organization_id"], identity_id, claimed["role"], claimed["invited_by"]),
            ).fetchone()
        return _hydrate(OrganizationMember, row, role=OrganizationRole)

    def revoke_invitation(self, invitation_id: str, now: datetime) -> bool:
        row = self._fetchone(
            "UPDATE invitation SET is_used = TRUE, used_at = %s WHERE id = %s AND NOT is_used RETURNING id",
            (now, invitation_id),
        )
        return row is not None

    def list_pending_invitations(self, organization_id: str, now: datetime) -> List[InvitationToken]:
        rows = self._fetchall(
            """
            SELECT * FROM invitation
            WHERE organization_id = %s AND NOT is_used AND expires_at > %s
            ORDER BY created_at DESC
            """,
            (organization_id, now),
        )
        return [_hydrate(InvitationToken, row, role=OrganizationRole) for row in rows]

    def delete_expired_invitations(self, now: datetime) -> int:
        return self._rowcount(
            "DELETE FROM invitation WHERE NOT is_used AND expires_at <= %s", (now,)
        )

    # password reset
    def save_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn:
            conn.execute("DELETE FROM password_reset WHERE identity_id = %s", (token.identity_id,))
            conn.execute(
                """
                INSERT INTO password_reset (id, identity_id, token_digest, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (token.id, token.identity_id, token.token_digest, token.expires_at, token.created_at),
            )
        return token

    def consume_password_reset(self, digest: str, now: datetime) -> Optional[PasswordResetToken]:
        row = self._fetchone(
            """
            UPDATE password_reset SET used_at = %s
            WHERE token_digest = %s AND used_at IS NULL AND expires_at > %s
            RETURNING *
            """,
            (now, digest, now),
        )
        return _hydrate(PasswordResetToken, row)

    def delete_expired_password_resets(self, now: datetime) -> int:
        return self._rowcount(
            "DELETE FROM password_reset WHERE expires_at <= %s OR used_at IS NOT NULL", (now,)
        )

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, event_type, category, severity, result, created_at, identity_id,
                                         session_id, resource_type, resource_id, action, failure_reason,
                                         ip_address, user_agent, request_id, old_values, new_values, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type,
                    event.category.value,
                    event.severity.value,
                    event.result.value,
                    event.created_at,
                    event.identity_id,
                    event.session_id,
                    event.resource_type,
                    event.resource_id,
                    event.action,
                    event.failure_reason,
                    event.ip_address,
                    event.user_agent,
                    event.request_id,
                    _json(event.old_values),
                    _json(event.new_values),
                    _json(event.metadata),
                ),
            )
        return event

    def query_audit_events(self, query: AuditQuery) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        filters = (
            ("identity_id", query.identity_id),
            ("event_type", query.event_type),
            ("category", query.category.value if query.category else None),
            ("severity", query.severity.value if query.severity else None),
            ("result", query.result.value if query.result else None),
            ("resource_type", query.resource_type),
            ("resource_id", query.resource_id),
            ("ip_address", query.ip_address),
        )
        for column, value in filters:
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if query.start is not None:
            clauses.append("created_at >= %s")
            params.append(query.start)
        if query.end is not None:
            clauses.append("created_at <= %s")
            params.append(query.end)
        sql = "SELECT * FROM audit_event"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        if query.limit is not None:
            sql += " LIMIT %s"
            params.append(query.limit)
        sql += " OFFSET %s"
        params.append(query.offset)
        rows = self._fetchall(sql, params)
        return [
            _hydrate(
                AuditEvent,
                row,
                category=AuditCategory,
                severity=AuditSeverity,
                result=AuditResult,
            )
            for row in rows
        ]

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        return self._rowcount("DELETE FROM audit_event WHERE created_at < %s", (cutoff,))


__all__ = ["PostgresStore", "SCHEMA_PATH"]
