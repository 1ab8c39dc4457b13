"""Structured logging configuration for Sender Notes.

Uses structlog for JSON-formatted logs to stdout. Every log line emitted while
serving one host message carries that message's request_id and action, so a
single saveNote or moveTemplate can be followed through the repository and
the storage adapter.

Usage:
    from sendernotes.core.logging import get_logger, request_context

    logger = get_logger(__name__)

    # In the message dispatcher:
    with request_context(action="saveNote"):
        ...

    # Log with automatic correlation ID inclusion:
    logger.info("note_saved", note_id=42, match_type="exact")
"""

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

# Context variable for the correlation ID of the message being served
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context.

    Args:
        correlation_id: UUID string for this request, or None to clear
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get the current correlation ID, if set."""
    return _correlation_id.get()


@contextmanager
def request_context(action: str | None = None) -> Iterator[str]:
    """Tag every log line of one host message with a fresh request id.

    The action is bound as well when it is known. Both are cleared on exit,
    including when the handler raises.

    Yields:
        The request id
    """
    request_id = str(uuid.uuid4())
    set_correlation_id(request_id)
    if action is not None:
        structlog.contextvars.bind_contextvars(action=action)
    try:
        yield request_id
    finally:
        structlog.contextvars.unbind_contextvars("action")
        set_correlation_id(None)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor to add correlation ID to log entries."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["request_id"] = correlation_id
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable format
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
    ]

    if json_output:
        # JSON output when embedded in a host that collects stdout
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # Human-readable output for the CLI
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        A structlog BoundLogger instance configured for this application

    Example:
        logger = get_logger(__name__)
        logger.info("templates_moved", template_id=3, count=6)
    """
    return structlog.get_logger(name)
