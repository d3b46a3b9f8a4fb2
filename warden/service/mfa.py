from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote, urlencode

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.service.email import (
    EmailSender,
    LoggingSmsSender,
    SmsSender,
    render_mfa_code,
    render_mfa_enabled,
)
from warden.service.errors import ConflictError, ErrorKind, NotFoundError, ValidationError
from warden.service.hashing import (
    SecretBox,
    generate_backup_code,
    generate_numeric_code,
    hash_code,
    normalize_backup_code,
    verify_code,
)
from warden.service.results import Result
from warden.storage.models import (
    BackupCode,
    Identity,
    MFAChallenge,
    MFAEnrollment,
    MFAMethod,
    new_id,
)

TOTP_PERIOD_SECONDS = 30
TOTP_DIGITS = 6
TOTP_SKEW_STEPS = 1
CODE_METHODS = (MFAMethod.SMS, MFAMethod.EMAIL)


class MFAStore(Protocol):
    def get_identity(self, identity_id: str) -> Optional[Identity]:
        ...

    def save_enrollment(self, enrollment: MFAEnrollment) -> MFAEnrollment:
        ...

    def get_enrollment(self, identity_id: str, method: MFAMethod) -> Optional[MFAEnrollment]:
        ...

    def list_enrollments(self, identity_id: str) -> List[MFAEnrollment]:
        ...

    def activate_enrollment(
        self, identity_id: str, method: MFAMethod, now: datetime
    ) -> Optional[MFAEnrollment]:
        ...

    def advance_totp_step(self, enrollment_id: str, step: int, now: datetime) -> bool:
        ...

    def create_challenge(self, challenge: MFAChallenge) -> MFAChallenge:
        ...

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        ...

    def get_latest_challenge(
        self, identity_id: str, method: MFAMethod, *, purpose: Optional[str] = None
    ) -> Optional[MFAChallenge]:
        ...

    def claim_challenge_attempt(self, challenge_id: str) -> bool:
        ...

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        ...

    def replace_backup_codes(self, identity_id: str, codes: Sequence[BackupCode]) -> None:
        ...

    def list_backup_codes(self, identity_id: str, *, unused_only: bool = True) -> List[BackupCode]:
        ...

    def consume_backup_code(self, code_id: str, now: datetime) -> bool:
        ...

    def begin_totp_enrollment(
        self, enrollment: MFAEnrollment, codes: Sequence[BackupCode]
    ) -> MFAEnrollment:
        ...

    def clear_mfa(self, identity_id: str, now: datetime) -> None:
        ...


@dataclass(frozen=True)
class TOTPEnrollment:
    """Shown to the user exactly once; nothing here is recoverable later."""

    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class MFAVerification:
    identity_id: str
    method: MFAMethod
    challenge_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def generate_totp(secret: str, step: int, *, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code for ``step`` (HMAC-SHA1, dynamic truncation)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        return ""
    digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def totp_step(moment: datetime) -> int:
    return int(moment.timestamp() // TOTP_PERIOD_SECONDS)


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD_SECONDS,
        }
    )
    return f"otpauth://totp/{label}?{query}"


class MFAService:
    """Second-factor enrollment and verification.

    TOTP secrets are sealed with Fernet before they reach storage. One-time
    codes (sms/email/backup) are stored as argon2 hashes. Every login-time
    verification runs against an :class:`MFAChallenge` whose attempt limit is
    spent atomically before the code is checked.
    """

    def __init__(
        self,
        store: MFAStore,
        settings: Settings,
        *,
        clock: Optional[ClockSource] = None,
        email_sender: Optional[EmailSender] = None,
        sms_sender: Optional[SmsSender] = None,
        secret_box: Optional[SecretBox] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.email_sender = email_sender
        self.sms_sender = sms_sender or LoggingSmsSender()
        self.secret_box = secret_box or SecretBox(settings.sealing_material)
        self.logger = get_logger(__name__)

    # enrollment
    def enroll_totp(self, identity: Identity) -> TOTPEnrollment:
        existing = self.store.get_enrollment(identity.id, MFAMethod.TOTP)
        if existing is not None and existing.is_verified:
            raise ConflictError("TOTP is already enabled; disable it before re-enrolling")
        secret = base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")
        now = self.clock.now()
        backup_codes, records = self._new_backup_codes(identity.id, now)
        self.store.begin_totp_enrollment(
            MFAEnrollment(
                id=new_id(),
                identity_id=identity.id,
                method=MFAMethod.TOTP,
                secret=self.secret_box.seal(secret),
                created_at=now,
            ),
            records,
        )
        self.logger.info("mfa_totp_enrollment_started", identity_id=identity.id)
        return TOTPEnrollment(
            secret=secret,
            provisioning_uri=provisioning_uri(secret, identity.email, self.settings.mfa_issuer),
            backup_codes=backup_codes,
        )

    def verify_totp(self, identity_id: str, code: str) -> Result[MFAEnrollment]:
        """Activate a pending TOTP enrollment with a current code."""
        enrollment = self.store.get_enrollment(identity_id, MFAMethod.TOTP)
        if enrollment is None:
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "TOTP is not enrolled")
        if not self._accept_totp(enrollment, code):
            self.logger.warning("mfa_totp_verification_failed", identity_id=identity_id)
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Invalid verification code")
        activated = self.store.activate_enrollment(identity_id, MFAMethod.TOTP, self.clock.now())
        if activated is None:
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "TOTP is not enrolled")
        self.logger.info("mfa_enabled", identity_id=identity_id, method=MFAMethod.TOTP.value)
        self._notify_enabled(identity_id)
        return Result.success(activated)

    def enroll_code_method(
        self, identity_id: str, method: MFAMethod, destination: str
    ) -> Result[MFAChallenge]:
        """Register an sms/email destination and send the confirmation code."""
        method = MFAMethod(method)
        if method not in CODE_METHODS:
            raise ValidationError("Only sms and email use delivered codes", detail={"method": method.value})
        if not destination or not destination.strip():
            raise ValidationError("A destination is required", detail={"method": method.value})
        existing = self.store.get_enrollment(identity_id, method)
        if existing is not None and existing.is_verified:
            raise ConflictError("This method is already enabled", detail={"method": method.value})
        self.store.save_enrollment(
            MFAEnrollment(
                id=new_id(),
                identity_id=identity_id,
                method=method,
                destination=destination.strip(),
                created_at=self.clock.now(),
            )
        )
        return self.start_challenge(identity_id, method, purpose="enrollment")

    def send_code(self, identity_id: str, method: MFAMethod) -> Result[MFAChallenge]:
        method = MFAMethod(method)
        if method not in CODE_METHODS:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "Codes are only sent for sms and email")
        enrollment = self.store.get_enrollment(identity_id, method)
        if enrollment is None:
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Method is not enrolled")
        purpose = "login" if enrollment.is_verified else "enrollment"
        return self.start_challenge(identity_id, method, purpose=purpose)

    # challenges
    def start_challenge(
        self,
        identity_id: str,
        method: Optional[MFAMethod] = None,
        *,
        purpose: str = "login",
        meta: Optional[Dict[str, Any]] = None,
    ) -> Result[MFAChallenge]:
        method = MFAMethod(method) if method else self.primary_method(identity_id)
        if method is None or method is MFAMethod.BACKUP_CODE:
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "No verified second factor")
        enrollment = self.store.get_enrollment(identity_id, method)
        if enrollment is None or (purpose == "login" and not enrollment.is_verified):
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Method is not enrolled")

        now = self.clock.now()
        code = generate_numeric_code(TOTP_DIGITS) if method in CODE_METHODS else None
        challenge = self.store.create_challenge(
            MFAChallenge(
                id=new_id(),
                identity_id=identity_id,
                method=method,
                expires_at=now + timedelta(minutes=self.settings.mfa_code_ttl_minutes),
                attempts_remaining=self.settings.mfa_code_attempts,
                code_hash=hash_code(code) if code else None,
                purpose=purpose,
                created_at=now,
                meta=dict(meta or {}),
            )
        )
        if code is not None:
            self._deliver_code(identity_id, enrollment, code)
        self.logger.info(
            "mfa_challenge_started",
            identity_id=identity_id,
            method=method.value,
            challenge_id=challenge.id,
            purpose=purpose,
        )
        return Result.success(challenge)

    def verify_challenge(
        self, challenge_id: str, code: str, *, method: Optional[MFAMethod] = None
    ) -> Result[MFAVerification]:
        challenge = self.store.get_challenge(challenge_id)
        if challenge is None:
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Unknown verification challenge")
        if challenge.consumed_at is not None:
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Verification code already used")
        if challenge.expires_at <= self.clock.now():
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Verification code expired")
        # Spend the attempt before looking at the code so concurrent guesses
        # can never exceed the limit
        if not self.store.claim_challenge_attempt(challenge.id):
            self.logger.warning(
                "mfa_attempts_exhausted", identity_id=challenge.identity_id, challenge_id=challenge.id
            )
            return Result.fail(ErrorKind.MFA_ATTEMPTS_EXHAUSTED, "Too many incorrect codes")

        used_method = MFAMethod(method) if method else challenge.method
        if not code or not self._check_factor(challenge, used_method, code):
            self.logger.warning(
                "mfa_verification_failed",
                identity_id=challenge.identity_id,
                method=used_method.value,
                challenge_id=challenge.id,
            )
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Invalid verification code")
        if not self.store.consume_challenge(challenge.id, self.clock.now()):
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Verification code already used")

        if challenge.purpose == "enrollment":
            self.store.activate_enrollment(challenge.identity_id, challenge.method, self.clock.now())
            self.logger.info(
                "mfa_enabled", identity_id=challenge.identity_id, method=challenge.method.value
            )
            self._notify_enabled(challenge.identity_id)
        self.logger.info(
            "mfa_verified", identity_id=challenge.identity_id, method=used_method.value
        )
        return Result.success(
            MFAVerification(
                identity_id=challenge.identity_id,
                method=used_method,
                challenge_id=challenge.id,
                meta=dict(challenge.meta or {}),
            )
        )

    def verify_code(self, identity_id: str, method: MFAMethod, code: str) -> Result[MFAVerification]:
        """Verify ``code`` against the most recent challenge for ``method``."""
        challenge = self.store.get_latest_challenge(identity_id, MFAMethod(method))
        if challenge is None:
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "No verification code was requested")
        return self.verify_challenge(challenge.id, code)

    def verify_backup_code(self, identity_id: str, code: str) -> Result[MFAVerification]:
        if not self._consume_backup_code(identity_id, code):
            self.logger.warning("mfa_backup_code_rejected", identity_id=identity_id)
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Invalid backup code")
        return Result.success(MFAVerification(identity_id=identity_id, method=MFAMethod.BACKUP_CODE))

    def verify_login(
        self,
        identity_id: str,
        code: str,
        *,
        method: Optional[MFAMethod] = None,
        challenge_id: Optional[str] = None,
    ) -> Result[MFAVerification]:
        """Second step of login for any factor, bounded by the open login challenge."""
        method = MFAMethod(method) if method else None
        if challenge_id:
            challenge = self.store.get_challenge(challenge_id)
        else:
            challenge = self.open_login_challenge(identity_id)
        if challenge is None:
            if method in CODE_METHODS:
                return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Request a new verification code")
            started = self.start_challenge(identity_id)
            if not started.ok:
                return Result.from_failure(started.failure)
            challenge = started.value
        if challenge.identity_id != identity_id or challenge.purpose != "login":
            return Result.fail(ErrorKind.MFA_CHALLENGE_FAILED, "Unknown verification challenge")
        return self.verify_challenge(challenge.id, code, method=method)

    def open_login_challenge(self, identity_id: str) -> Optional[MFAChallenge]:
        """Newest unconsumed, unexpired login challenge across verified methods."""
        now = self.clock.now()
        candidates = []
        for enrollment in self.store.list_enrollments(identity_id):
            if not enrollment.is_verified:
                continue
            challenge = self.store.get_latest_challenge(identity_id, enrollment.method, purpose="login")
            if challenge and challenge.consumed_at is None and challenge.expires_at > now:
                candidates.append(challenge)
        return max(candidates, key=lambda c: c.created_at) if candidates else None

    # management
    def disable(self, identity_id: str) -> None:
        self.store.clear_mfa(identity_id, self.clock.now())
        self.logger.info("mfa_disabled", identity_id=identity_id)

    def _new_backup_codes(self, identity_id: str, now: datetime) -> Tuple[List[str], List[BackupCode]]:
        codes = [
            generate_backup_code(self.settings.mfa_backup_code_length)
            for _ in range(self.settings.mfa_backup_code_count)
        ]
        records = [
            BackupCode(id=new_id(), identity_id=identity_id, code_hash=hash_code(c), created_at=now)
            for c in codes
        ]
        return codes, records

    def regenerate_backup_codes(self, identity_id: str) -> List[str]:
        codes, records = self._new_backup_codes(identity_id, self.clock.now())
        self.store.replace_backup_codes(identity_id, records)
        self.logger.info("mfa_backup_codes_issued", identity_id=identity_id, count=len(codes))
        return codes

    def remaining_backup_codes(self, identity_id: str) -> int:
        return len(self.store.list_backup_codes(identity_id))

    def list_enrollments(self, identity_id: str) -> List[MFAEnrollment]:
        return self.store.list_enrollments(identity_id)

    def verified_methods(self, identity_id: str) -> List[MFAMethod]:
        return [e.method for e in self.store.list_enrollments(identity_id) if e.is_verified]

    def is_enabled(self, identity_id: str) -> bool:
        return bool(self.verified_methods(identity_id))

    def primary_method(self, identity_id: str) -> Optional[MFAMethod]:
        verified = [e for e in self.store.list_enrollments(identity_id) if e.is_verified]
        primary = next((e for e in verified if e.is_primary), None)
        chosen = primary or (verified[0] if verified else None)
        return chosen.method if chosen else None

    # internals
    def _check_factor(self, challenge: MFAChallenge, method: MFAMethod, code: str) -> bool:
        if method is MFAMethod.BACKUP_CODE:
            return challenge.purpose == "login" and self._consume_backup_code(challenge.identity_id, code)
        if method is not challenge.method:
            return False
        if method is MFAMethod.TOTP:
            enrollment = self.store.get_enrollment(challenge.identity_id, MFAMethod.TOTP)
            return enrollment is not None and self._accept_totp(enrollment, code)
        return verify_code(challenge.code_hash, code.strip())

    def _accept_totp(self, enrollment: MFAEnrollment, code: str) -> bool:
        """Match ``code`` within one step of skew and burn that step."""
        code = (code or "").strip()
        if not enrollment.secret or len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        secret = self.secret_box.unseal(enrollment.secret)
        if not secret:
            self.logger.error("mfa_totp_secret_unreadable", identity_id=enrollment.identity_id)
            return False
        now = self.clock.now()
        current = totp_step(now)
        for offset in range(-TOTP_SKEW_STEPS, TOTP_SKEW_STEPS + 1):
            step = current + offset
            if hmac.compare_digest(generate_totp(secret, step), code):
                if self.store.advance_totp_step(enrollment.id, step, now):
                    return True
                self.logger.warning("mfa_totp_replay_rejected", identity_id=enrollment.identity_id)
                return False
        return False

    def _consume_backup_code(self, identity_id: str, code: str) -> bool:
        normalized = normalize_backup_code(code or "")
        if len(normalized) != self.settings.mfa_backup_code_length:
            return False
        for candidate in self.store.list_backup_codes(identity_id):
            if verify_code(candidate.code_hash, normalized):
                return self.store.consume_backup_code(candidate.id, self.clock.now())
        return False

    def _deliver_code(self, identity_id: str, enrollment: MFAEnrollment, code: str) -> None:
        destination = enrollment.destination
        if not destination:
            self.logger.warning("mfa_code_destination_missing", identity_id=identity_id)
            return
        minutes = self.settings.mfa_code_ttl_minutes
        if enrollment.method is MFAMethod.EMAIL:
            if self.email_sender is None:
                self.logger.warning("mfa_email_sender_missing", identity_id=identity_id)
                return
            message = render_mfa_code(self.settings.mfa_issuer, code, minutes)
            delivered = self.email_sender.send(
                destination, message.subject, message.html_body, message.text_body
            )
        else:
            delivered = self.sms_sender.send(
                destination,
                f"{self.settings.mfa_issuer} verification code: {code}. Expires in {minutes} minutes.",
            )
        if not delivered:
            self.logger.warning(
                "mfa_code_delivery_failed", identity_id=identity_id, method=enrollment.method.value
            )

    def _notify_enabled(self, identity_id: str) -> None:
        if self.email_sender is None:
            return
        identity = self.store.get_identity(identity_id)
        if identity is None:
            return
        message = render_mfa_enabled(self.settings.mfa_issuer)
        self.email_sender.send(identity.email, message.subject, message.html_body, message.text_body)


__all__ = [
    "MFAService",
    "MFAStore",
    "MFAVerification",
    "TOTPEnrollment",
    "generate_totp",
    "provisioning_uri",
    "totp_step",
]
