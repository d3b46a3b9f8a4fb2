from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.service.errors import ErrorKind
from warden.service.hashing import generate_token, lookup_digest
from warden.service.results import Result
from warden.storage.models import CredentialToken, Identity, TokenKind, new_id

logger = get_logger(__name__)


class TokenStore(Protocol):
    def create_token(self, token: CredentialToken) -> CredentialToken:
        ...

    def get_token_by_digest(self, digest: str, kind: TokenKind) -> Optional[CredentialToken]:
        ...

    def revoke_token(
        self, token_id: str, now: datetime, *, replaced_by: Optional[str] = None
    ) -> bool:
        ...

    def revoke_identity_tokens(
        self, identity_id: str, now: datetime, kind: Optional[TokenKind] = None
    ) -> int:
        ...

    def list_tokens(self, identity_id: str, kind: Optional[TokenKind] = None) -> List[CredentialToken]:
        ...

    def delete_expired_tokens(self, now: datetime) -> Dict[str, int]:
        ...


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    email: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class IssuedToken:
    """Opaque token value handed to the client once, plus its stored record."""

    value: str
    record: CredentialToken

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


class TokenService:
    """Issues and verifies access JWTs and opaque refresh / remember-me tokens.

    Access tokens are verified statelessly. Refresh and remember-me tokens are
    looked up by HMAC digest; rotation revokes the presented token before the
    replacement is stored, so a rotated token never verifies again.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    # access tokens
    def issue_access_token(self, identity: Identity, *, session_id: Optional[str] = None) -> str:
        now = self.clock.now()
        expires = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload: Dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity.id,
            "email": identity.email,
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
            "jti": str(uuid.uuid4()),
            "type": "access",
        }
        if session_id:
            payload["sid"] = session_id
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> Result[AccessClaims]:
        payload = self._decode_jwt(token)
        if payload is None:
            return Result.fail(ErrorKind.TOKEN_INVALID, "Invalid access token")
        if payload.get("type") != "access":
            return Result.fail(ErrorKind.TOKEN_INVALID, "Invalid access token")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
            subject = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            return Result.fail(ErrorKind.TOKEN_INVALID, "Invalid access token")
        if exp_ts <= self.clock.now().timestamp():
            return Result.fail(ErrorKind.TOKEN_EXPIRED, "Access token expired")
        return Result.success(
            AccessClaims(
                subject=subject,
                email=str(payload.get("email", "")),
                issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
                token_id=str(payload.get("jti", "")),
                session_id=payload.get("sid"),
            )
        )

    # refresh tokens
    def issue_refresh_token(
        self,
        identity_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedToken:
        return self._issue(
            identity_id,
            TokenKind.REFRESH,
            timedelta(days=self.settings.refresh_token_ttl_days),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def verify_refresh_token(self, token: str) -> Result[CredentialToken]:
        return self._verify(token, TokenKind.REFRESH)

    def rotate_refresh_token(
        self,
        token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Result[IssuedToken]:
        verified = self.verify_refresh_token(token)
        if not verified.ok:
            return Result.from_failure(verified.failure)
        old = verified.value
        now = self.clock.now()
        replacement_id = new_id()
        try:
            revoked = self.store.revoke_token(old.id, now, replaced_by=replacement_id)
        except Exception as exc:
            self.logger.error("refresh_rotation_revoke_failed", token_id=old.id, error=str(exc))
            return Result.fail(ErrorKind.TOKEN_INVALID, "Refresh token could not be verified")
        if not revoked:
            # Another caller rotated or revoked it between verify and revoke
            self.logger.warning("refresh_rotation_lost_race", token_id=old.id)
            return Result.fail(ErrorKind.TOKEN_REVOKED, "Refresh token has been revoked")
        try:
            issued = self._issue(
                old.identity_id,
                TokenKind.REFRESH,
                timedelta(days=self.settings.refresh_token_ttl_days),
                user_agent=user_agent or old.user_agent,
                ip_address=ip_address or old.ip_address,
                token_id=replacement_id,
            )
        except Exception as exc:
            self.logger.error(
                "refresh_rotation_issue_failed",
                identity_id=old.identity_id,
                token_id=old.id,
                error=str(exc),
            )
            return Result.fail(
                ErrorKind.INTERNAL_ERROR,
                "Refresh token rotation failed; sign in again",
            )
        self.logger.info(
            "refresh_token_rotated", identity_id=old.identity_id, token_id=issued.record.id
        )
        return Result.success(issued)

    def revoke_refresh_token(self, token: str) -> bool:
        return self._revoke_value(token, TokenKind.REFRESH)

    def revoke_all(self, identity_id: str, *, include_remember_me: bool = True) -> int:
        now = self.clock.now()
        kind = None if include_remember_me else TokenKind.REFRESH
        count = self.store.revoke_identity_tokens(identity_id, now, kind)
        self.logger.info("tokens_revoked_for_identity", identity_id=identity_id, count=count)
        return count

    def list_active_refresh_tokens(self, identity_id: str) -> List[CredentialToken]:
        now = self.clock.now()
        return [t for t in self.store.list_tokens(identity_id, TokenKind.REFRESH) if t.is_live(now)]

    # remember-me tokens
    def issue_remember_me_token(
        self,
        identity_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedToken:
        return self._issue(
            identity_id,
            TokenKind.REMEMBER_ME,
            timedelta(days=self.settings.remember_me_ttl_days),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def verify_remember_me_token(self, token: str) -> Result[CredentialToken]:
        return self._verify(token, TokenKind.REMEMBER_ME)

    def revoke_remember_me(self, token: str) -> bool:
        return self._revoke_value(token, TokenKind.REMEMBER_ME)

    def revoke_all_remember_me(self, identity_id: str) -> int:
        return self.store.revoke_identity_tokens(identity_id, self.clock.now(), TokenKind.REMEMBER_ME)

    def cleanup_expired(self) -> Dict[str, int]:
        counts = self.store.delete_expired_tokens(self.clock.now())
        self.logger.info("expired_tokens_removed", **{f"{k}_count": v for k, v in counts.items()})
        return counts

    # internals
    def digest(self, token: str) -> str:
        return lookup_digest(self.settings.lookup_key, token)

    def _issue(
        self,
        identity_id: str,
        kind: TokenKind,
        ttl: timedelta,
        *,
        user_agent: Optional[str],
        ip_address: Optional[str],
        token_id: Optional[str] = None,
    ) -> IssuedToken:
        now = self.clock.now()
        value = generate_token(32)
        record = CredentialToken(
            id=token_id or new_id(),
            identity_id=identity_id,
            token_digest=self.digest(value),
            expires_at=now + ttl,
            kind=kind,
            created_at=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        stored = self.store.create_token(record)
        return IssuedToken(value=value, record=stored)

    def _verify(self, token: str, kind: TokenKind) -> Result[CredentialToken]:
        if not token:
            return Result.fail(ErrorKind.TOKEN_INVALID, "Invalid token")
        try:
            record = self.store.get_token_by_digest(self.digest(token), kind)
        except Exception as exc:
            self.logger.error("token_lookup_failed", token_kind=kind.value, error=str(exc))
            return Result.fail(ErrorKind.TOKEN_INVALID, "Token could not be verified")
        if record is None:
            return Result.fail(ErrorKind.TOKEN_INVALID, "Invalid token")
        if record.revoked:
            return Result.fail(ErrorKind.TOKEN_REVOKED, "Token has been revoked")
        if record.expires_at <= self.clock.now():
            return Result.fail(ErrorKind.TOKEN_EXPIRED, "Token has expired")
        return Result.success(record)

    def _revoke_value(self, token: str, kind: TokenKind) -> bool:
        record = self.store.get_token_by_digest(self.digest(token), kind) if token else None
        if record is None:
            return False
        return self.store.revoke_token(record.id, self.clock.now())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the payload of a correctly signed token for this issuer/audience.

        Expiry is checked by the caller so it can be reported separately.
        """
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm; "none" and asymmetric algorithms are rejected outright
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if not payload.get("exp"):
            return None
        return payload


__all__ = ["AccessClaims", "IssuedToken", "TokenService", "TokenStore"]
