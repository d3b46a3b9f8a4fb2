from __future__ import annotations

import hashlib
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.service.errors import ErrorKind
from warden.service.results import Result
from warden.storage.models import Session, new_id


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def get_session_by_refresh_token(self, refresh_token_id: str) -> Optional[Session]:
        ...

    def touch_session(self, session_id: str, now: datetime, expires_at: datetime) -> Optional[Session]:
        ...

    def rebind_session(self, session_id: str, refresh_token_id: str) -> Optional[Session]:
        ...

    def revoke_session(self, session_id: str, now: datetime, reason: str) -> bool:
        ...

    def revoke_token(
        self, token_id: str, now: datetime, *, replaced_by: Optional[str] = None
    ) -> bool:
        ...

    def revoke_identity_sessions(self, identity_id: str, now: datetime, reason: str) -> int:
        ...

    def list_sessions(
        self, *, identity_id: Optional[str] = None, live_at: Optional[datetime] = None
    ) -> List[Session]:
        ...

    def delete_expired_sessions(self, now: datetime) -> int:
        ...


@dataclass
class SessionStats:
    total_active: int = 0
    by_ip_address: Dict[str, int] = field(default_factory=dict)
    by_user_agent: Dict[str, int] = field(default_factory=dict)


def device_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> Optional[str]:
    if not user_agent and not ip_address:
        return None
    material = f"{user_agent or ''}|{ip_address or ''}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()[:32]


class SessionService:
    """Sliding-expiry sessions bound to the refresh token that created them."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.settings.session_ttl_hours)

    def create_session(
        self,
        identity_id: str,
        *,
        refresh_token_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        now = self.clock.now()
        session = Session(
            id=new_id(),
            identity_id=identity_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.ttl,
            refresh_token_id=refresh_token_id,
            user_agent=user_agent,
            ip_address=ip_address,
            device_fingerprint=device_fingerprint(user_agent, ip_address),
        )
        created = self.store.create_session(session)
        self.logger.info("session_created", identity_id=identity_id, session_id=created.id)
        return created

    def touch(self, session_id: str) -> Optional[Session]:
        """Extend a live session; activity tracking is best-effort."""
        now = self.clock.now()
        try:
            return self.store.touch_session(session_id, now, now + self.ttl)
        except Exception as exc:
            self.logger.warning("session_touch_failed", session_id=session_id, error=str(exc))
            return None

    def validate(self, session_id: str) -> Result[Session]:
        try:
            session = self.store.get_session(session_id)
        except Exception as exc:
            self.logger.error("session_lookup_failed", session_id=session_id, error=str(exc))
            return Result.fail(ErrorKind.TOKEN_INVALID, "Session could not be verified")
        if session is None:
            return Result.fail(ErrorKind.TOKEN_INVALID, "Unknown session")
        if session.revoked_at is not None:
            return Result.fail(ErrorKind.TOKEN_REVOKED, "Session has been revoked")
        if session.expires_at <= self.clock.now():
            return Result.fail(ErrorKind.TOKEN_EXPIRED, "Session has expired")
        touched = self.touch(session_id)
        return Result.success(touched or session)

    def get_by_refresh_token(self, refresh_token_id: str) -> Optional[Session]:
        return self.store.get_session_by_refresh_token(refresh_token_id)

    def rebind(self, session_id: str, refresh_token_id: str) -> Optional[Session]:
        """Point a session at the refresh token that replaced its previous one."""
        return self.store.rebind_session(session_id, refresh_token_id)

    def invalidate(self, session_id: str, *, reason: str = "logout") -> bool:
        """Revoke the session and the refresh token bound to it."""
        now = self.clock.now()
        revoked = self.store.revoke_session(session_id, now, reason)
        if revoked:
            session = self.store.get_session(session_id)
            if session is not None and session.refresh_token_id:
                self.store.revoke_token(session.refresh_token_id, now)
            self.logger.info("session_invalidated", session_id=session_id, reason=reason)
        return revoked

    def invalidate_all(self, identity_id: str, *, reason: str = "logout_all") -> int:
        count = self.store.revoke_identity_sessions(identity_id, self.clock.now(), reason)
        self.logger.info(
            "sessions_invalidated_for_identity", identity_id=identity_id, count=count, reason=reason
        )
        return count

    def list_active(self, identity_id: str) -> List[Session]:
        return self.store.list_sessions(identity_id=identity_id, live_at=self.clock.now())

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self.clock.now())
        self.logger.info("expired_sessions_removed", count=removed)
        return removed

    def stats(self) -> SessionStats:
        active = self.store.list_sessions(live_at=self.clock.now())
        return SessionStats(
            total_active=len(active),
            by_ip_address=dict(Counter(s.ip_address or "unknown" for s in active)),
            by_user_agent=dict(Counter(s.user_agent or "unknown" for s in active)),
        )


__all__ = ["SessionService", "SessionStats", "SessionStore", "device_fingerprint"]
