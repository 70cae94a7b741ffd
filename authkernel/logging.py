from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys never reach a log line, not even partially
_SECRET_KEYS = ("password", "secret", "otp", "cookie", "authorization")
# Token and hash values keep a short prefix and suffix so rows can be matched up
_TOKEN_KEYS = ("token", "hash")
_EMAIL_KEYS = ("email",)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def mask_email(value: str) -> str:
    """``alice@example.com`` -> ``a***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _mask(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, dict):
        return {k: _mask(str(k), v) for k, v in value.items()}
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if any(k in lower_key for k in _SECRET_KEYS):
        return "***"
    if any(k in lower_key for k in _TOKEN_KEYS):
        text = str(value)
        return text[:4] + "***" + text[-4:] if len(text) > 16 else "***"
    if any(k in lower_key for k in _EMAIL_KEYS):
        return mask_email(str(value))
    return value


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, tokens and email addresses, including nested metadata."""
    for key in list(event_dict.keys()):
        if key in ("event", "correlation_id", "level", "timestamp"):
            continue
        event_dict[key] = _mask(key, event_dict[key])
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    Called once at import from ``LOG_LEVEL``/``LOG_JSON``/``LOG_DEV_MODE``;
    the app factory calls it again with the resolved settings.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
