from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol
from urllib.parse import urlencode

from warden.config import Settings
from warden.logging import email_digest, get_logger
from warden.service.audit import AuditService
from warden.service.clock import ClockSource, SystemClock
from warden.service.email import (
    EmailSender,
    render_password_changed,
    render_password_reset,
    render_welcome,
)
from warden.service.errors import ConflictError, ErrorKind, ValidationError
from warden.service.hashing import (
    generate_token,
    hash_password,
    lookup_digest,
    password_needs_rehash,
    verify_password,
)
from warden.service.mfa import MFAService
from warden.service.policy import PolicyLayer
from warden.service.rate_limit import RateLimitGuard, normalize_email
from warden.service.results import Failure, Result
from warden.service.sessions import SessionService
from warden.service.tokens import TokenService
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    AuditResult,
    AuditSeverity,
    Identity,
    MFAMethod,
    PasswordResetToken,
    Session,
    new_id,
)

MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
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
        ...

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        ...

    def get_identity_by_provider(self, provider: str, subject: str) -> Optional[Identity]:
        ...

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        ...

    def record_failed_login(
        self, identity_id: str, now: datetime, *, threshold: int, locked_until: datetime
    ) -> Optional[Identity]:
        ...

    def save_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        ...

    def consume_password_reset(self, digest: str, now: datetime) -> Optional[PasswordResetToken]:
        ...


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a request."""

    identity_id: str
    email: str
    session_id: Optional[str] = None
    token_id: Optional[str] = None


@dataclass
class LoginGrant:
    identity: Identity
    session: Session
    access_token: str
    refresh_token: str
    expires_in: int
    remember_me_token: Optional[str] = None
    token_type: str = "bearer"


@dataclass(frozen=True)
class FederatedProfile:
    """Normalized identity asserted by an external provider."""

    provider: str
    subject: str
    email: str
    email_verified: bool = False
    display_name: Optional[str] = None


def password_policy_violations(password: str) -> List[str]:
    problems: List[str] = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password or ""):
        problems.append("an uppercase letter")
    if not any(c.islower() for c in password or ""):
        problems.append("a lowercase letter")
    if not any(c.isdigit() for c in password or ""):
        problems.append("a digit")
    return problems


class AuthService:
    """Signup, login and credential lifecycle built from the individual services."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionService,
        login_guard: RateLimitGuard,
        reset_guard: RateLimitGuard,
        mfa: MFAService,
        policy: PolicyLayer,
        audit: AuditService,
        email_sender: Optional[EmailSender] = None,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.login_guard = login_guard
        self.reset_guard = reset_guard
        self.mfa = mfa
        self.policy = policy
        self.audit = audit
        self.email_sender = email_sender
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)
        self._dummy_hash: Optional[str] = None

    # registration
    def signup(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Identity:
        email = normalize_email(email)
        if "@" not in email:
            raise ValidationError("A valid email address is required")
        self._check_password_policy(password)
        if self.store.get_identity_by_email(email) is not None:
            raise ConflictError("Email is already registered")
        try:
            identity = self.store.create_identity(
                email, hash_password(password), display_name=display_name
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email is already registered") from exc

        self.policy.initialize_identity_roles(identity)
        self.logger.info("signup_completed", identity_id=identity.id, email_hash=email_digest(email))
        self.audit.log_authentication(
            "signup", success=True, identity_id=identity.id, ip_address=ip_address, user_agent=user_agent
        )
        self._send(identity.email, render_welcome(self.settings.email_from_name, display_name))
        return identity

    # login
    def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
        mfa_code: Optional[str] = None,
        mfa_method: Optional[MFAMethod] = None,
        challenge_id: Optional[str] = None,
    ) -> Result[LoginGrant]:
        email = normalize_email(email)
        context = {"ip_address": ip_address, "user_agent": user_agent}

        limited = self.login_guard.enforce(email, ip_address)
        if not limited.ok:
            self.audit.log_security_event(
                "login_rate_limited", metadata={"email_hash": email_digest(email)}, **context
            )
            return Result.from_failure(limited.failure)

        identity = self.store.get_identity_by_email(email)
        if identity is None or not identity.is_usable() or not identity.password_hash:
            # Burn comparable time so unknown emails are not distinguishable
            verify_password(self._timing_hash(), password)
            return self._reject_login(email, None, "unknown_identity", **context)

        now = self.clock.now()
        if identity.is_locked:
            if identity.locked_until and identity.locked_until > now:
                retry_after = max(1, int((identity.locked_until - now).total_seconds()))
                self.audit.log_authentication(
                    "login_failed",
                    success=False,
                    identity_id=identity.id,
                    failure_reason="account_locked",
                    **context,
                )
                return Result.fail(
                    ErrorKind.RATE_LIMITED,
                    "Account is temporarily locked. Please try again later.",
                    retry_after=retry_after,
                )
            identity = self.store.update_identity(
                identity.id,
                is_locked=False,
                locked_until=None,
                failed_login_attempts=0,
                updated_at=now,
            ) or identity

        if not verify_password(identity.password_hash, password):
            locked = self.store.record_failed_login(
                identity.id,
                now,
                threshold=self.settings.account_lock_threshold,
                locked_until=now + timedelta(minutes=self.settings.account_lock_minutes),
            )
            if locked is not None and locked.is_locked:
                self.logger.warning("account_locked", identity_id=identity.id)
                self.audit.log_security_event(
                    "account_locked", identity_id=identity.id, severity=AuditSeverity.ERROR, **context
                )
            return self._reject_login(email, identity.id, "invalid_password", **context)

        if password_needs_rehash(identity.password_hash):
            self.store.update_identity(
                identity.id, password_hash=hash_password(password), updated_at=now
            )

        second_factor = self._second_factor(
            identity, mfa_code, mfa_method, challenge_id, email=email, **context
        )
        if second_factor is not None:
            return Result.from_failure(second_factor)

        return Result.success(
            self._complete_login(identity, remember_me=remember_me, method="password", **context)
        )

    def login_federated(
        self,
        profile: FederatedProfile,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
        mfa_code: Optional[str] = None,
        mfa_method: Optional[MFAMethod] = None,
        challenge_id: Optional[str] = None,
    ) -> Result[LoginGrant]:
        context = {"ip_address": ip_address, "user_agent": user_agent}
        email = normalize_email(profile.email)
        if not profile.provider or not profile.subject or "@" not in email:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "Incomplete identity provider profile")

        identity = self.store.get_identity_by_provider(profile.provider, profile.subject)
        if identity is None:
            existing = self.store.get_identity_by_email(email)
            if existing is not None:
                if not profile.email_verified or existing.provider_subject is not None:
                    return Result.fail(
                        ErrorKind.CONFLICT, "An account with this email already exists"
                    )
                identity = self.store.update_identity(
                    existing.id,
                    auth_provider=profile.provider,
                    provider_subject=profile.subject,
                    email_verified=True,
                    updated_at=self.clock.now(),
                )
                self.logger.info(
                    "federated_identity_linked", identity_id=existing.id, provider=profile.provider
                )
            else:
                try:
                    identity = self.store.create_identity(
                        email,
                        None,
                        auth_provider=profile.provider,
                        provider_subject=profile.subject,
                        email_verified=profile.email_verified,
                        display_name=profile.display_name,
                    )
                except ConstraintViolation:
                    return Result.fail(
                        ErrorKind.CONFLICT, "An account with this email already exists"
                    )
                self.policy.initialize_identity_roles(identity)
                self.audit.log_authentication(
                    "signup", success=True, identity_id=identity.id, metadata={"provider": profile.provider}, **context
                )
                self._send(identity.email, render_welcome(self.settings.email_from_name, profile.display_name))

        if identity is None or not identity.is_usable():
            return self._reject_login(email, identity.id if identity else None, "inactive_identity", **context)

        second_factor = self._second_factor(
            identity, mfa_code, mfa_method, challenge_id, email=email, **context
        )
        if second_factor is not None:
            return Result.from_failure(second_factor)
        return Result.success(
            self._complete_login(identity, remember_me=remember_me, method=profile.provider, **context)
        )

    def remember_me_login(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[LoginGrant]:
        verified = self.tokens.verify_remember_me_token(token)
        if not verified.ok:
            self.audit.log_authentication(
                "remember_me_failed",
                success=False,
                failure_reason=verified.kind.value,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return Result.from_failure(verified.failure)
        identity = self.store.get_identity(verified.value.identity_id)
        if identity is None or not identity.is_usable():
            return Result.fail(ErrorKind.TOKEN_REVOKED, "Token has been revoked")
        grant = self._complete_login(
            identity, remember_me=False, method="remember_me", ip_address=ip_address, user_agent=user_agent
        )
        grant.remember_me_token = token
        return Result.success(grant)

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[LoginGrant]:
        current = self.tokens.verify_refresh_token(refresh_token)
        if not current.ok:
            if current.kind is ErrorKind.TOKEN_REVOKED:
                self.audit.log_security_event(
                    "refresh_token_reuse", ip_address=ip_address, user_agent=user_agent
                )
            return Result.from_failure(current.failure)
        previous = current.value
        rotated = self.tokens.rotate_refresh_token(
            refresh_token, user_agent=user_agent, ip_address=ip_address
        )
        if not rotated.ok:
            return Result.from_failure(rotated.failure)
        issued = rotated.value

        identity = self.store.get_identity(previous.identity_id)
        if identity is None or not identity.is_usable():
            self.tokens.revoke_refresh_token(issued.value)
            return Result.fail(ErrorKind.TOKEN_REVOKED, "Token has been revoked")

        session = self.sessions.get_by_refresh_token(previous.id)
        if session is not None and session.revoked_at is not None:
            self.tokens.revoke_refresh_token(issued.value)
            self.logger.warning("refresh_for_revoked_session", session_id=session.id)
            return Result.fail(ErrorKind.TOKEN_REVOKED, "Session has been revoked")
        if session is not None and session.is_live(self.clock.now()):
            session = self.sessions.rebind(session.id, issued.record.id) or session
            session = self.sessions.touch(session.id) or session
        else:
            session = self.sessions.create_session(
                identity.id,
                refresh_token_id=issued.record.id,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        return Result.success(
            LoginGrant(
                identity=identity,
                session=session,
                access_token=self.tokens.issue_access_token(identity, session_id=session.id),
                refresh_token=issued.value,
                expires_in=self.settings.access_token_ttl_minutes * 60,
            )
        )

    def authenticate(self, access_token: str) -> Result[Principal]:
        claims = self.tokens.verify_access_token(access_token)
        if not claims.ok:
            return Result.from_failure(claims.failure)
        try:
            identity = self.store.get_identity(claims.value.subject)
        except Exception as exc:
            self.logger.error("principal_lookup_failed", error=str(exc))
            return Result.fail(ErrorKind.TOKEN_INVALID, "Invalid access token")
        if identity is None or not identity.is_usable():
            return Result.fail(ErrorKind.TOKEN_INVALID, "Invalid access token")
        if claims.value.session_id:
            session = self.sessions.validate(claims.value.session_id)
            if not session.ok:
                return Result.from_failure(session.failure)
        return Result.success(
            Principal(
                identity_id=identity.id,
                email=identity.email,
                session_id=claims.value.session_id,
                token_id=claims.value.token_id,
            )
        )

    # logout
    def logout(self, refresh_token: str) -> bool:
        current = self.tokens.verify_refresh_token(refresh_token)
        if not current.ok:
            return False
        record = current.value
        revoked = self.tokens.revoke_refresh_token(refresh_token)
        session = self.sessions.get_by_refresh_token(record.id)
        if session is not None:
            self.sessions.invalidate(session.id, reason="logout")
        self.audit.log_authentication(
            "logout", success=True, identity_id=record.identity_id, session_id=session.id if session else None
        )
        return revoked

    def logout_everywhere(self, identity_id: str) -> int:
        self.tokens.revoke_all(identity_id)
        count = self.sessions.invalidate_all(identity_id, reason="logout_all")
        self.audit.log_authentication("logout_all", success=True, identity_id=identity_id)
        return count

    # password lifecycle
    def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[None]:
        """Start a reset; the outcome never reveals whether the email is registered."""
        email = normalize_email(email)
        limited = self.reset_guard.enforce(email, ip_address)
        if not limited.ok:
            return Result.from_failure(limited.failure)
        # Every request counts toward the reset window
        self.reset_guard.record_attempt(email, ip_address, False, user_agent=user_agent)

        identity = self.store.get_identity_by_email(email)
        if identity is None or not identity.is_usable() or not identity.password_hash:
            self.logger.info("password_reset_unknown_email", email_hash=email_digest(email))
            return Result.success(None)

        now = self.clock.now()
        token = generate_token()
        self.store.save_password_reset(
            PasswordResetToken(
                id=new_id(),
                identity_id=identity.id,
                token_digest=lookup_digest(self.settings.lookup_key, token),
                expires_at=now + timedelta(minutes=self.settings.password_reset_ttl_minutes),
                created_at=now,
            )
        )
        url = f"{self.settings.frontend_url.rstrip('/')}/reset-password?{urlencode({'token': token})}"
        self._send(
            identity.email,
            render_password_reset(
                self.settings.email_from_name, url, self.settings.password_reset_ttl_minutes
            ),
        )
        self.logger.info("password_reset_requested", identity_id=identity.id)
        self.audit.log_security_event(
            "password_reset_requested",
            identity_id=identity.id,
            severity=AuditSeverity.INFO,
            result=AuditResult.SUCCESS,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return Result.success(None)

    def complete_password_reset(self, token: str, new_password: str) -> Result[None]:
        problems = password_policy_violations(new_password)
        if problems:
            return Result.fail(
                ErrorKind.VALIDATION_ERROR, "Password does not meet requirements", missing=problems
            )
        record = None
        if token:
            record = self.store.consume_password_reset(
                lookup_digest(self.settings.lookup_key, token), self.clock.now()
            )
        if record is None:
            self.logger.warning("password_reset_invalid_token")
            return Result.fail(ErrorKind.TOKEN_INVALID, "Reset link is invalid or has expired")
        identity = self.store.get_identity(record.identity_id)
        if identity is None or not identity.is_usable():
            return Result.fail(ErrorKind.TOKEN_INVALID, "Reset link is invalid or has expired")

        self._replace_password(identity, new_password, reason="password_reset")
        self.logger.info("password_reset_completed", identity_id=identity.id)
        return Result.success(None)

    def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> Result[None]:
        identity = self.store.get_identity(identity_id)
        if identity is None or not identity.is_usable():
            return Result.fail(ErrorKind.NOT_FOUND, "Identity not found")
        if not verify_password(identity.password_hash, current_password):
            self.audit.log_authentication(
                "password_change_failed",
                success=False,
                identity_id=identity_id,
                failure_reason="invalid_password",
            )
            return Result.fail(ErrorKind.INVALID_CREDENTIALS, "Current password is incorrect")
        problems = password_policy_violations(new_password)
        if problems:
            return Result.fail(
                ErrorKind.VALIDATION_ERROR, "Password does not meet requirements", missing=problems
            )
        if verify_password(identity.password_hash, new_password):
            return Result.fail(
                ErrorKind.VALIDATION_ERROR, "New password must differ from the current password"
            )
        self._replace_password(identity, new_password, reason="password_changed")
        return Result.success(None)

    # internals
    def _second_factor(
        self,
        identity: Identity,
        mfa_code: Optional[str],
        mfa_method: Optional[MFAMethod],
        challenge_id: Optional[str],
        *,
        email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Optional[Failure]:
        """Return a failure when the second factor is missing or wrong."""
        methods = self.mfa.verified_methods(identity.id)
        if not identity.mfa_enabled or not methods:
            return None
        if not mfa_code:
            wanted = mfa_method if mfa_method and mfa_method is not MFAMethod.BACKUP_CODE else None
            started = self.mfa.start_challenge(identity.id, wanted, purpose="login")
            offered = [m.value for m in methods]
            if self.mfa.remaining_backup_codes(identity.id):
                offered.append(MFAMethod.BACKUP_CODE.value)
            detail = {"methods": offered}
            if started.ok:
                detail["challenge_id"] = started.value.id
                detail["method"] = started.value.method.value
            self.logger.info("login_mfa_required", identity_id=identity.id)
            return Failure(ErrorKind.MFA_REQUIRED, "Second factor required", detail)

        verified = self.mfa.verify_login(
            identity.id, mfa_code, method=mfa_method, challenge_id=challenge_id
        )
        if verified.ok:
            return None
        self.login_guard.record_attempt(email, ip_address, False, user_agent=user_agent)
        self.audit.log_authentication(
            "login_failed",
            success=False,
            identity_id=identity.id,
            failure_reason=verified.kind.value,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return verified.failure

    def _complete_login(
        self,
        identity: Identity,
        *,
        remember_me: bool,
        method: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginGrant:
        refresh = self.tokens.issue_refresh_token(
            identity.id, user_agent=user_agent, ip_address=ip_address
        )
        session = self.sessions.create_session(
            identity.id,
            refresh_token_id=refresh.record.id,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        remember = None
        if remember_me:
            remember = self.tokens.issue_remember_me_token(
                identity.id, user_agent=user_agent, ip_address=ip_address
            ).value

        self.login_guard.clear(identity.email, ip_address)
        self.login_guard.record_attempt(identity.email, ip_address, True, user_agent=user_agent)
        now = self.clock.now()
        updated = self.store.update_identity(
            identity.id,
            failed_login_attempts=0,
            is_locked=False,
            locked_until=None,
            last_login_at=now,
            updated_at=now,
        )
        identity = updated or identity
        self.policy.initialize_identity_roles(identity)
        self.logger.info("login_succeeded", identity_id=identity.id, method=method, session_id=session.id)
        self.audit.log_authentication(
            "login",
            success=True,
            identity_id=identity.id,
            session_id=session.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"method": method, "remember_me": remember_me},
        )
        return LoginGrant(
            identity=identity,
            session=session,
            access_token=self.tokens.issue_access_token(identity, session_id=session.id),
            refresh_token=refresh.value,
            expires_in=self.settings.access_token_ttl_minutes * 60,
            remember_me_token=remember,
        )

    def _reject_login(
        self,
        email: str,
        identity_id: Optional[str],
        reason: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Result[LoginGrant]:
        self.login_guard.record_attempt(email, ip_address, False, user_agent=user_agent)
        self.logger.info("login_failed", email_hash=email_digest(email), reason=reason)
        self.audit.log_authentication(
            "login_failed",
            success=False,
            identity_id=identity_id,
            failure_reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return Result.fail(ErrorKind.INVALID_CREDENTIALS, "Invalid email or password")

    def _replace_password(self, identity: Identity, new_password: str, *, reason: str) -> None:
        now = self.clock.now()
        self.store.update_identity(
            identity.id,
            password_hash=hash_password(new_password),
            password_changed_at=now,
            failed_login_attempts=0,
            is_locked=False,
            locked_until=None,
            updated_at=now,
        )
        self.tokens.revoke_all(identity.id)
        self.sessions.invalidate_all(identity.id, reason=reason)
        self.audit.log_security_event(
            reason, identity_id=identity.id, severity=AuditSeverity.INFO, result=AuditResult.SUCCESS
        )
        self._send(identity.email, render_password_changed(self.settings.email_from_name))

    def _check_password_policy(self, password: str) -> None:
        problems = password_policy_violations(password)
        if problems:
            raise ValidationError(
                "Password does not meet requirements", detail={"missing": problems}
            )

    def _timing_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = hash_password(generate_token(16))
        return self._dummy_hash

    def _send(self, to_email: str, message) -> None:
        if self.email_sender is None:
            return
        try:
            self.email_sender.send(to_email, message.subject, message.html_body, message.text_body)
        except Exception as exc:
            self.logger.error("notification_email_failed", error=str(exc))


__all__ = [
    "AuthService",
    "AuthStore",
    "FederatedProfile",
    "LoginGrant",
    "Principal",
    "password_policy_violations",
]
