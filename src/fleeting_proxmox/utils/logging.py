"""Structured logging utilities for fleeting-proxmox."""

import logging
import sys
from typing import Any

import structlog


def setup_logging(level: str = "INFO", format: str = "json", output: str = "stderr") -> None:
    """Configure structured logging.

    Output defaults to stderr since stdout may be owned by the host process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        output: Output destination (stdout or stderr)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    stream = sys.stdout if output == "stdout" else sys.stderr

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=log_level,
    )

    if format == "json":
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
        **initial_values: Context bound to every event of the logger

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name, **initial_values)


def log_error(
    logger: structlog.BoundLogger,
    error: Exception,
    event: str,
    **kwargs: Any,
) -> None:
    """Log an error with structured context.

    Args:
        logger: Logger instance
        error: Exception instance
        event: Event message
        **kwargs: Additional context fields
    """
    logger.error(
        event,
        error_type=type(error).__name__,
        err=str(error),
        **kwargs,
    )
