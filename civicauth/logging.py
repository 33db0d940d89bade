from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "authorization",
    "code",
    "challenge",
    "public_key",
    "state",
}
_EMAIL_KEYS = {"email", "identifier"}
_EMAIL_PATTERN = re.compile(r"^([^@]{1,2})[^@]*(@.+)$")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_token(value: Optional[str]) -> Optional[str]:
    """Shorten a credential to a loggable prefix."""
    if not value:
        return value
    if len(value) <= 8:
        return "***"
    return value[:6] + "***"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and email addresses before rendering."""
    for key in list(event_dict.keys()):
        if key in {"event", "correlation_id", "error_code"}:
            continue
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key in _EMAIL_KEYS or lower_key.endswith("_email"):
            event_dict[key] = _EMAIL_PATTERN.sub(r"\1***\2", value)
        elif any(marker in lower_key for marker in _SENSITIVE_KEYS):
            # identifiers and labels, not credentials
            if lower_key.endswith(("_id", "jti", "_name", "_kind")):
                continue
            event_dict[key] = mask_token(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Arguments left as None are read from ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Called once on import; scripts call it again to change
    the level.
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
