"""Structured logging configuration for Mnemos.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- Correlation IDs for tracing a processing pass across log lines
- Job and worker context binding

structlog is layered over Python's stdlib logging so that stdlib handlers
(stdout, rotating files) stay in charge of output while all emission goes
through structlog.

Example usage:
    >>> from mnemos.config import LoggingConfig
    >>> from mnemos.logging import setup_logging, get_logger, bind_job_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> bind_job_context(job_id="7c0e...", worker_id="worker-1")
    >>> logger.info("embed_job_completed", dimensions=1536)
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from mnemos.config import LoggingConfig

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add correlation_id to log event if set in context.

    Args:
        logger: Logger instance (unused, required by structlog protocol)
        method_name: Log method name (unused, required by structlog protocol)
        event_dict: Current event dictionary to augment

    Returns:
        Event dictionary with correlation_id added if available
    """
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID for current context."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return _correlation_id.get()


def bind_job_context(job_id: str, worker_id: str) -> None:
    """Bind job and worker identifiers to all subsequent logs.

    Args:
        job_id: Embedding job identifier to bind
        worker_id: Worker (lease owner) identifier to bind
    """
    structlog.contextvars.bind_contextvars(job_id=job_id, worker_id=worker_id)


def clear_job_context() -> None:
    """Remove job and worker identifiers bound by bind_job_context."""
    structlog.contextvars.unbind_contextvars("job_id", "worker_id")


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog with the given configuration.

    Sets up JSON or console rendering, an optional rotating file handler,
    timestamp/level/logger-name processors and the correlation ID processor.

    Args:
        config: Logging configuration from MnemosConfig
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=config.file,
            maxBytes=config.rotation_size_mb * 1024 * 1024,
            backupCount=config.retention_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stdout)

    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if config.format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
