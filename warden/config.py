from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    """Pydantic ``Field`` tagged with the environment variable that feeds it."""
    extra = dict(kwargs.pop("json_schema_extra", None) or {}, env=env)
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Log outbound email and SMS instead of delivering them",
    )
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    lookup_secret: str | None = env_field(
        None,
        "LOOKUP_SECRET",
        description="HMAC key for token lookup digests; defaults to JWT_SECRET",
    )

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS")
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")

    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_window_minutes: int = env_field(15, "LOGIN_WINDOW_MINUTES")
    login_lockout_minutes: int = env_field(30, "LOGIN_LOCKOUT_MINUTES")
    reset_max_attempts: int = env_field(3, "RESET_MAX_ATTEMPTS")
    reset_window_minutes: int = env_field(60, "RESET_WINDOW_MINUTES")
    reset_lockout_minutes: int = env_field(60, "RESET_LOCKOUT_MINUTES")
    account_lock_threshold: int = env_field(5, "ACCOUNT_LOCK_THRESHOLD")
    account_lock_minutes: int = env_field(30, "ACCOUNT_LOCK_MINUTES")

    mfa_code_ttl_minutes: int = env_field(5, "MFA_CODE_TTL_MINUTES")
    mfa_code_attempts: int = env_field(3, "MFA_CODE_ATTEMPTS")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    mfa_backup_code_length: int = env_field(8, "MFA_BACKUP_CODE_LENGTH")
    mfa_issuer: str = env_field("Warden", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for sealing TOTP secrets and invitation tokens; defaults to JWT_SECRET",
    )

    invitation_ttl_minutes: int = env_field(30, "INVITATION_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    super_admin_email: str | None = env_field(
        None,
        "SUPER_ADMIN_EMAIL",
        description="Identity with this email receives the global super_admin role on signup/login",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, falling back to ``.env``."""
        dotenv = dotenv_values(".env")
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            variable = extra.get("env", name.upper())
            raw = os.environ.get(variable, dotenv.get(variable))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "remember_me_ttl_days",
        "session_ttl_hours",
        "login_max_attempts",
        "login_window_minutes",
        "login_lockout_minutes",
        "reset_max_attempts",
        "reset_window_minutes",
        "reset_lockout_minutes",
        "account_lock_threshold",
        "account_lock_minutes",
        "mfa_code_ttl_minutes",
        "mfa_code_attempts",
        "mfa_backup_code_count",
        "mfa_backup_code_length",
        "invitation_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("super_admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip().lower()

    @field_validator("jwt_secret")
    @classmethod
    def _resolve_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        root = os.getenv("SHARED_FS_ROOT") or info.data.get("shared_fs_root") or "/srv/warden"
        return _load_or_create_secret(Path(root) / ".jwt_secret")

    @property
    def lookup_key(self) -> bytes:
        """HMAC key used for refresh, remember-me, reset and invitation lookup digests."""
        return (self.lookup_secret or self.jwt_secret).encode("utf-8")

    @property
    def sealing_material(self) -> str:
        return self.mfa_encryption_key or self.jwt_secret


def _load_or_create_secret(path: Path) -> str:
    """Return the signing secret stored at ``path``, generating it on first use.

    The file is written atomically with mode 0600 so every worker sharing the
    directory signs with the same key across restarts.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(path.parent, 0o700)
    except PermissionError:
        # pre-provisioned volume owned by another user
        pass
    except OSError as exc:
        logger.warning("jwt_secret_dir_unavailable", error=str(exc), path=str(path.parent))

    if path.is_file() and not path.is_symlink():
        try:
            stored = path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(path))
        else:
            if len(stored) >= 32:
                return stored

    secret = secrets.token_urlsafe(64)
    fd, staging = tempfile.mkstemp(dir=str(path.parent), prefix=f"{path.name}.", suffix=".partial")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(staging, path)
    except OSError as exc:
        if os.path.exists(staging):
            os.unlink(staging)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(path))
        raise RuntimeError(
            "JWT_SECRET is unset and no secret could be stored under SHARED_FS_ROOT"
        ) from exc
    logger.info("jwt_secret_generated", path=str(path))
    return secret


_cached: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings read once from the environment and ``.env``."""
    global _cached
    if _cached is None:
        _cached = Settings.from_env()
    return _cached


def reset_settings_cache() -> None:
    global _cached
    _cached = None
