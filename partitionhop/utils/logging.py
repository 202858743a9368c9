"""
Structured logging for partitionhop using structlog.

- JSON output for machine consumption, console output for humans
- Attempt-scoped context: every log line emitted while a hop attempt is in
  flight carries its attempt number and initiator
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to log entries."""
    event_dict["app"] = "partitionhop"
    return event_dict


def _handler_for(log_output: str) -> logging.Handler:
    if log_output == "stdout":
        return logging.StreamHandler(sys.stdout)
    if log_output == "stderr":
        return logging.StreamHandler(sys.stderr)
    return logging.FileHandler(log_output)


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_output: str = "stdout",
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        log_output: stdout, stderr, or a file path
    """
    handler = _handler_for(log_output)
    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        stream = getattr(handler, "stream", None)
        renderer = structlog.dev.ConsoleRenderer(
            colors=bool(stream is not None and stream.isatty()),
        )

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_attempt_context(**values: Any) -> None:
    """
    Tag subsequent log lines with attempt details.

    Args:
        **values: Context to bind (e.g. attempt=3, initiator="local")
    """
    structlog.contextvars.bind_contextvars(**values)


def clear_attempt_context() -> None:
    """Drop attempt details once the attempt is over."""
    structlog.contextvars.unbind_contextvars("attempt", "initiator")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        structlog logger
    """
    return structlog.get_logger(name)
