"""Structured logging for the gateway, with per-request context.

Events go through the standard library ``logging`` module as one JSON
object per line (or a readable console line for local work). A redaction
step masks string values under credential-like keys, so a stray
``password=...`` or ``cookie=...`` field never reaches the log.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any, cast

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

from skygate.redaction import REDACTED, is_sensitive_key


def mask_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask string values stored under sensitive keys."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and is_sensitive_key(key):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str, log_format: str = "json") -> None:
    """Configure structlog on top of the standard library logger."""
    numeric_level = logging.getLevelNamesMapping().get(level.strip().upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric_level)

    renderer: Any = (
        structlog.dev.ConsoleRenderer(colors=False)
        if log_format.strip().lower() == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            mask_secrets,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(correlation_id: str, **fields: Any) -> None:
    """Bind the correlation ID (and any extra fields) for the current request."""
    bind_contextvars(correlation_id=correlation_id, **fields)


def clear_request_context() -> None:
    """Drop request-scoped context once the response is produced."""
    clear_contextvars()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
