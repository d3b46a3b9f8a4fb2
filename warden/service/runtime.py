from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.audit import AuditService
from warden.service.auth import AuthService
from warden.service.clock import ClockSource, SystemClock
from warden.service.email import EmailSender, EmailService, LoggingSmsSender, SmsSender
from warden.service.hashing import SecretBox
from warden.service.invitations import InvitationService
from warden.service.mfa import MFAService
from warden.service.policy import PolicyLayer
from warden.service.rate_limit import AttemptLedger, RateLimitConfig, RateLimitGuard
from warden.service.rbac import RBACEngine
from warden.service.sessions import SessionService
from warden.service.tokens import TokenService
from warden.storage.memory import MemoryStore
from warden.storage.redis_cache import RedisAttemptLedger

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store and the wired service graph for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        clock: Optional[ClockSource] = None,
        email_sender: Optional[EmailSender] = None,
        sms_sender: Optional[SmsSender] = None,
        ledger: Optional[AttemptLedger] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        if store is not None:
            store_type = type(store).__name__
        try:
            self.store = store if store is not None else self._build_store()
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.ledger = ledger if ledger is not None else self._build_ledger()

        self.email = email_sender or EmailService.from_settings(self.settings)
        self.sms = sms_sender or LoggingSmsSender()
        secret_box = SecretBox(self.settings.sealing_material)

        self.tokens = TokenService(self.store, self.settings, clock=self.clock)
        self.sessions = SessionService(self.store, self.settings, clock=self.clock)
        self.login_guard = RateLimitGuard(
            self.ledger,
            clock=self.clock,
            config=RateLimitConfig(
                max_attempts=self.settings.login_max_attempts,
                window_minutes=self.settings.login_window_minutes,
                lockout_minutes=self.settings.login_lockout_minutes,
                scope="login",
            ),
        )
        self.reset_guard = RateLimitGuard(
            self.ledger,
            clock=self.clock,
            config=RateLimitConfig(
                max_attempts=self.settings.reset_max_attempts,
                window_minutes=self.settings.reset_window_minutes,
                lockout_minutes=self.settings.reset_lockout_minutes,
                scope="password_reset",
            ),
        )
        self.rbac = RBACEngine(self.store, clock=self.clock)
        self.policy = PolicyLayer(self.store, self.rbac, self.settings, clock=self.clock)
        self.audit = AuditService(self.store, clock=self.clock)
        self.mfa = MFAService(
            self.store,
            self.settings,
            clock=self.clock,
            email_sender=self.email,
            sms_sender=self.sms,
            secret_box=secret_box,
        )
        self.invitations = InvitationService(
            self.store,
            self.settings,
            clock=self.clock,
            email_sender=self.email,
            secret_box=secret_box,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            login_guard=self.login_guard,
            reset_guard=self.reset_guard,
            mfa=self.mfa,
            policy=self.policy,
            audit=self.audit,
            email_sender=self.email,
            clock=self.clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.ledger, RedisAttemptLedger),
            email_configured=getattr(self.email, "is_configured", False),
        )

    def _build_store(self):
        if self.settings.use_memory_store:
            return MemoryStore()
        from warden.storage.postgres import PostgresStore

        return PostgresStore(self.settings.database_url)

    def _build_ledger(self) -> AttemptLedger:
        if not self.settings.redis_url:
            return self.store
        try:
            ledger = RedisAttemptLedger(self.settings.redis_url)
            ledger.verify_connection()
            return ledger
        except Exception as exc:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is configured but unreachable; fix REDIS_URL or unset it to keep "
                    "login attempts in the primary store."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return self.store

    def cleanup_expired(self) -> dict:
        """Prune expired credentials, sessions and stale attempt records."""
        now = self.clock.now()
        summary = {
            "tokens": self.tokens.cleanup_expired(),
            "sessions": self.sessions.cleanup_expired(),
            "invitations": self.invitations.cleanup_expired(),
            "password_resets": self.store.delete_expired_password_resets(now),
            "login_attempts": self.login_guard.cleanup(),
        }
        logger.info(
            "runtime_cleanup_completed",
            expired_token_count=sum(summary["tokens"].values()),
            session_count=summary["sessions"],
            invitation_count=summary["invitations"],
            password_reset_count=summary["password_resets"],
            login_attempt_count=summary["login_attempts"],
        )
        return summary


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a fresh environment read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
