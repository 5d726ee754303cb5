"""Structured logging configuration using structlog.

Every line carries the service name, level, logger name and an ISO
timestamp, plus whatever is bound for the current request or event:
- request_id (HTTP middleware)
- customer_id (path-bound, or per processed event)
- provider_event_id and event_type (event workers)

Webhook signatures, API keys and secrets are masked before rendering.
"""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

SERVICE_NAME = "billing-sync"

# Keys whose values must never be written to logs
SENSITIVE_KEYS = frozenset(
    {"signature", "signature_header", "payment_signature", "secret", "webhook_secret", "api_key", "authorization"}
)
REDACTED = "[redacted]"


def add_service_name(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential-bearing fields."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def drop_debug(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop DEBUG events unless LOG_LEVEL=DEBUG."""
    if method_name == "debug" and os.getenv("LOG_LEVEL", "INFO").upper() != "DEBUG":
        raise structlog.DropEvent
    return event_dict


def _renderer(json_format: bool) -> Processor:
    if json_format:
        return structlog.processors.JSONRenderer(sort_keys=False)
    return structlog.dev.ConsoleRenderer(colors=True, exception_formatter=structlog.dev.plain_traceback)


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON lines if True, colored console output otherwise
        include_timestamp: Stamp events with an ISO 8601 UTC timestamp
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_name,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if numeric_level > logging.DEBUG:
        processors.append(drop_debug)
    processors.append(_renderer(json_format))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a logger; pass the calling module's __name__."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind values to every later log line in this context.

    Example:
        bind_context(request_id="abc123", customer_id="42")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def event_context(**kwargs: Any) -> Iterator[None]:
    """Bind values for the duration of a block, restoring the previous context after.

    Worker threads use it so every line logged while handling an event
    carries its provider_event_id.
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


def short_id(value: str, length: int = 16) -> str:
    """Shorten an identifier for log output."""
    if len(value) <= length:
        return value
    return value[:length] + "..."
