from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from warden.logging import email_digest, get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.service.errors import ErrorKind
from warden.service.results import Result
from warden.storage.models import LoginAttempt, new_id


class AttemptLedger(Protocol):
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        ...

    def list_login_attempts(
        self,
        *,
        scope: str = "login",
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
    ) -> List[LoginAttempt]:
        ...

    def clear_login_attempts(
        self, email: str, ip_address: Optional[str] = None, *, scope: str = "login"
    ) -> int:
        ...

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        ...


@dataclass(frozen=True)
class RateLimitConfig:
    max_attempts: int
    window_minutes: int
    lockout_minutes: int
    scope: str = "login"


LOGIN = RateLimitConfig(max_attempts=5, window_minutes=15, lockout_minutes=30, scope="login")
PASSWORD_RESET = RateLimitConfig(
    max_attempts=3, window_minutes=60, lockout_minutes=60, scope="password_reset"
)


@dataclass(frozen=True)
class RateLimitStatus:
    limited: bool
    retry_after: int = 0
    locked_until: Optional[datetime] = None


@dataclass
class LoginStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    recent_ip_addresses: List[str] = field(default_factory=list)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class RateLimitGuard:
    """Sliding-window failure counter with a fixed lockout per email and per origin.

    A key is locked once ``max_attempts`` failures fall inside any span of
    ``window_minutes``; the lock lasts ``lockout_minutes`` from the failure that
    crossed the threshold. Email and origin are evaluated independently and the
    longer lock wins.
    """

    def __init__(
        self,
        ledger: AttemptLedger,
        *,
        clock: Optional[ClockSource] = None,
        config: RateLimitConfig = LOGIN,
    ) -> None:
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.config = config
        self.logger = get_logger(__name__)

    def check(self, email: str, ip_address: Optional[str] = None) -> RateLimitStatus:
        """Return whether the email or origin is currently locked out.

        Ledger failures fail open: a broken ledger must not lock everyone out.
        """
        email = normalize_email(email)
        now = self.clock.now()
        horizon = now - timedelta(
            minutes=self.config.window_minutes + self.config.lockout_minutes
        )
        try:
            by_email = self.ledger.list_login_attempts(
                scope=self.config.scope, email=email, since=horizon, success=False
            )
            by_origin: List[LoginAttempt] = []
            if ip_address:
                by_origin = self.ledger.list_login_attempts(
                    scope=self.config.scope, ip_address=ip_address, since=horizon, success=False
                )
        except Exception as exc:
            self.logger.warning(
                "rate_limit_check_failed", scope=self.config.scope, error=str(exc)
            )
            return RateLimitStatus(limited=False)

        locks = [
            lock
            for lock in (self._lock_until(by_email), self._lock_until(by_origin))
            if lock is not None and lock > now
        ]
        if not locks:
            return RateLimitStatus(limited=False)
        locked_until = max(locks)
        retry_after = max(1, math.ceil((locked_until - now).total_seconds()))
        return RateLimitStatus(limited=True, retry_after=retry_after, locked_until=locked_until)

    def enforce(self, email: str, ip_address: Optional[str] = None) -> Result[None]:
        status = self.check(email, ip_address)
        if status.limited:
            self.logger.warning(
                "rate_limit_exceeded",
                scope=self.config.scope,
                email_hash=email_digest(email),
                ip_address=ip_address,
                retry_after=status.retry_after,
            )
            return Result.fail(
                ErrorKind.RATE_LIMITED,
                "Too many attempts. Please try again later.",
                retry_after=status.retry_after,
            )
        return Result.success(None)

    def record_attempt(
        self,
        email: str,
        ip_address: Optional[str],
        success: bool,
        *,
        user_agent: Optional[str] = None,
    ) -> None:
        attempt = LoginAttempt(
            id=new_id(),
            email=normalize_email(email),
            ip_address=ip_address,
            success=success,
            attempted_at=self.clock.now(),
            user_agent=user_agent,
            scope=self.config.scope,
        )
        try:
            self.ledger.record_login_attempt(attempt)
        except Exception as exc:
            self.logger.warning(
                "rate_limit_record_failed", scope=self.config.scope, error=str(exc)
            )

    def clear(self, email: str, ip_address: Optional[str] = None) -> int:
        try:
            return self.ledger.clear_login_attempts(
                normalize_email(email), ip_address, scope=self.config.scope
            )
        except Exception as exc:
            self.logger.warning("rate_limit_clear_failed", scope=self.config.scope, error=str(exc))
            return 0

    def login_stats(self, email: str, *, days: int = 7) -> LoginStats:
        since = self.clock.now() - timedelta(days=days)
        attempts = self.ledger.list_login_attempts(
            scope=self.config.scope, email=normalize_email(email), since=since
        )
        successful = sum(1 for a in attempts if a.success)
        recent: List[str] = []
        for attempt in reversed(attempts):
            if attempt.ip_address and attempt.ip_address not in recent:
                recent.append(attempt.ip_address)
        return LoginStats(
            total=len(attempts),
            successful=successful,
            failed=len(attempts) - successful,
            recent_ip_addresses=recent[:10],
        )

    def cleanup(self, *, days_to_keep: int = 30) -> int:
        removed = self.ledger.delete_login_attempts_before(
            self.clock.now() - timedelta(days=days_to_keep)
        )
        self.logger.info("login_attempts_pruned", count=removed)
        return removed

    def _lock_until(self, failures: Sequence[LoginAttempt]) -> Optional[datetime]:
        """Latest lockout end implied by ``failures`` (ascending by time)."""
        threshold = self.config.max_attempts
        if len(failures) < threshold:
            return None
        window = timedelta(minutes=self.config.window_minutes)
        lockout = timedelta(minutes=self.config.lockout_minutes)
        stamps = sorted(a.attempted_at for a in failures)
        locked_until: Optional[datetime] = None
        for index in range(threshold - 1, len(stamps)):
            if stamps[index] - stamps[index - threshold + 1] <= window:
                candidate = stamps[index] + lockout
                if locked_until is None or candidate > locked_until:
                    locked_until = candidate
        return locked_until


__all__ = [
    "AttemptLedger",
    "LOGIN",
    "LoginStats",
    "PASSWORD_RESET",
    "RateLimitConfig",
    "RateLimitGuard",
    "RateLimitStatus",
    "normalize_email",
]
