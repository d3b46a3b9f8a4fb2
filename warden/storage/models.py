from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TokenKind(str, Enum):
    REFRESH = "refresh"
    REMEMBER_ME = "remember_me"


class MFAMethod(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    BACKUP_CODE = "backup_code"


class OrganizationRole(str, Enum):
    OWNER = "owner"
    EMPLOYEE = "employee"


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    DATA_ACCESS = "data_access"
    SECURITY = "security"
    ADMIN = "admin"
    SYSTEM = "system"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


@dataclass
class Identity:
    id: str
    email: str
    password_hash: Optional[str] = None
    is_active: bool = True
    is_locked: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    email_verified: bool = False
    auth_provider: str = "local"
    provider_subject: Optional[str] = None
    display_name: Optional[str] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def is_usable(self) -> bool:
        return self.is_active and self.deleted_at is None


@dataclass
class CredentialToken:
    """Refresh or remember-me token; only the lookup digest of the value is kept."""

    id: str
    identity_id: str
    token_digest: str
    expires_at: datetime
    kind: TokenKind = TokenKind.REFRESH
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    last_used_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class Session:
    id: str
    identity_id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    refresh_token_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None

    def is_live(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class Role:
    id: str
    name: str
    level: int = 0
    description: Optional[str] = None
    parent_role_id: Optional[str] = None
    is_system: bool = False
    is_assignable: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RoleAssignment:
    id: str
    identity_id: str
    role_id: str
    organization_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    assigned_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_effective(self, now: datetime) -> bool:
        if self.valid_from is not None and self.valid_from > now:
            return False
        return self.valid_until is None or self.valid_until > now


@dataclass
class PermissionGrant:
    id: str
    identity_id: str
    permission_id: str
    is_granted: bool = True
    organization_id: Optional[str] = None
    resource_id: Optional[str] = None
    granted_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_effective(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass
class Organization:
    id: str
    name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OrganizationMember:
    organization_id: str
    identity_id: str
    role: OrganizationRole = OrganizationRole.EMPLOYEE
    is_active: bool = True
    invited_by: Optional[str] = None
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class Module:
    id: str
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    is_core: bool = False


@dataclass
class OrganizationModule:
    organization_id: str
    module_id: str
    is_enabled: bool = True
    enabled_by: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ModuleAccess:
    organization_id: str
    identity_id: str
    module_id: str
    can_read: bool = True
    can_write: bool = False
    can_delete: bool = False
    granted_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_effective(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

    def allows(self, access: str) -> bool:
        return bool(getattr(self, f"can_{access}", False))


@dataclass
class MFAEnrollment:
    id: str
    identity_id: str
    method: MFAMethod
    secret: Optional[str] = None  # Fernet-sealed TOTP secret
    destination: Optional[str] = None
    is_verified: bool = False
    is_primary: bool = False
    last_totp_step: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


@dataclass
class MFAChallenge:
    id: str
    identity_id: str
    method: MFAMethod
    expires_at: datetime
    attempts_remaining: int
    code_hash: Optional[str] = None
    purpose: str = "login"
    consumed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict[str, Any] | None = None


@dataclass
class BackupCode:
    id: str
    identity_id: str
    code_hash: str
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class InvitationToken:
    id: str
    email: str
    organization_id: str
    role: OrganizationRole
    lookup_digest: str
    token_hash: str
    sealed_token: str
    expires_at: datetime
    invited_by: Optional[str] = None
    is_used: bool = False
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: datetime) -> bool:
        return not self.is_used and self.expires_at > now


@dataclass
class PasswordResetToken:
    id: str
    identity_id: str
    token_digest: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    id: str
    email: str
    ip_address: Optional[str]
    success: bool
    attempted_at: datetime
    user_agent: Optional[str] = None
    scope: str = "login"


@dataclass
class AuditEvent:
    id: str
    event_type: str
    category: AuditCategory
    severity: AuditSeverity
    result: AuditResult
    created_at: datetime
    identity_id: Optional[str] = None
    session_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    old_values: Dict[str, Any] | None = None
    new_values: Dict[str, Any] | None = None
    metadata: Dict[str, Any] | None = None


@dataclass
class AuditQuery:
    identity_id: Optional[str] = None
    event_type: Optional[str] = None
    category: Optional[AuditCategory] = None
    severity: Optional[AuditSeverity] = None
    result: Optional[AuditResult] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = 100
    offset: int = 0

    def matches(self, event: AuditEvent) -> bool:
        checks = (
            (self.identity_id, event.identity_id),
            (self.event_type, event.event_type),
            (self.category, event.category),
            (self.severity, event.severity),
            (self.result, event.result),
            (self.resource_type, event.resource_type),
            (self.resource_id, event.resource_id),
            (self.ip_address, event.ip_address),
        )
        if any(wanted is not None and wanted != actual for wanted, actual in checks):
            return False
        if self.start is not None and event.created_at < self.start:
            return False
        if self.end is not None and event.created_at > self.end:
            return False
        return True
