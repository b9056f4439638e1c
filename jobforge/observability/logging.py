"""
Structured logging setup using structlog.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from jobforge.config import get_settings

# Level between INFO and WARNING used for "job completed" style messages
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add OpenTelemetry trace context to log records.

    Args:
        logger: The logger instance.
        method_name: The method name being called.
        event_dict: The event dictionary.

    Returns:
        The event dictionary with trace context added.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging for the worker and reaper processes.

    Sets up structlog with JSON or console output based on configuration.
    Records emitted through ``logging.getLogger(__name__)`` are rendered by
    the same processor chain, including their ``extra`` fields.
    """
    settings = get_settings()

    # Level name from settings; unknown names fall back to INFO
    log_level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Processors applied to structlog and stdlib records alike
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,  # trace_id and span_id of the current span
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    # Output format
    if settings.log_format == "json":
        # One JSON object per line for log shippers
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        # Readable console output for local runs
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    # structlog hands its events to stdlib logging for rendering
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Render stdlib records, including ones from logging.getLogger, with the same chain
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    # Single stdout handler on the root logger
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def log_success(logger: logging.Logger, message: str, **extra: Any) -> None:
    """
    Log a message at the SUCCESS level.

    Args:
        logger: Standard library logger to emit through.
        message: Log message.
        **extra: Structured fields attached to the record.
    """
    logger.log(SUCCESS, message, extra=extra)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__).

    Returns:
        BoundLogger: A structlog logger instance.
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """
    Bind context variables to all subsequent log messages.

    Args:
        **kwargs: Key-value pairs to add to log context.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
