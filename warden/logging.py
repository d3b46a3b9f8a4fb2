from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id of the call being served; audit events reuse it
_request_id: ContextVar[Optional[str]] = ContextVar("warden_request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

_SECRET_KEYS = ("password", "secret", "token", "code", "authorization", "email")
# Keys that name a digest or a count, never the secret itself
_SAFE_SUFFIXES = ("_hash", "_id", "_count", "_digest", "_kind", "_type")


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def _stamp_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = request_id
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential-looking values that reached a log call.

    Strings longer than four characters keep their first and last two
    characters; shorter ones are replaced entirely.
    """
    for key, value in event_dict.items():
        name = key.lower()
        if name == "event" or name.endswith(_SAFE_SUFFIXES) or not isinstance(value, str):
            continue
        if any(marker in name for marker in _SECRET_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}" if len(value) > 4 else "***"
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    """Install the structlog pipeline used by every ``get_logger`` caller.

    JSON lines are the default; ``dev_mode`` (or ``json_output=False``)
    switches to the colored console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def email_digest(email: Optional[str]) -> Optional[str]:
    """Stable, non-reversible handle for an email address in log lines."""
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()[:16]


def redact_email(email: str) -> str:
    """'user@example.com' -> 'u***@example.com'."""
    if "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"
