from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Field names whose values never reach log sinks unmasked
_PII_KEYS = (
    "password",
    "secret",
    "token",
    "authorization",
    "phone",
    "identity",
    "code",
    "otp",
)

_PHONE_PATTERN = re.compile(r"\+?\d{8,15}")


def mask_value(value: str) -> str:
    """Keep the first/last two characters of a value for debugging."""
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks phone numbers, codes and credentials."""
    for key in list(event_dict.keys()):
        if key in {"event", "error_code", "code_length"}:
            continue
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(pii in lower_key for pii in _PII_KEYS):
            event_dict[key] = mask_value(value)
        elif key == "error":
            event_dict[key] = _PHONE_PATTERN.sub(lambda m: mask_value(m.group(0)), value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    console: Optional[bool] = None,
    redact: bool = True,
) -> None:
    """Install the structlog pipeline.

    With no arguments the level comes from ``LOG_LEVEL`` and console output is
    picked when ``LOG_JSON`` is off or ``LOG_DEV_MODE`` is on. Redaction stays on
    outside of local debugging.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if console is None:
        console = _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
    ]
    if redact:
        processors.append(_redact_pii)
    processors.append(structlog.processors.StackInfoRenderer())
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
