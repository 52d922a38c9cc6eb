"""Structured logging for Viewkeeper.

This module provides structured logging using structlog, enabling:
- JSON-formatted logs for production (machine-readable)
- Pretty console logs for development (human-readable)
- Automatic context binding (partition, entity_key, event_id)
- Integration with standard library logging

Usage:
    from viewkeeper.logging import configure_logging, get_logger

    # Configure once at application startup
    configure_logging(json_format=True)  # For production

    logger = get_logger("viewkeeper.ingest")
    logger.info("event_applied", partition=3, entity_key="order-1", sequence=7)

Context binding:
    logger = partition_logger(3)
    logger.warning("skip_stale", entity_key="order-1")  # partition included
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

_configured = False


def configure_logging(
    json_format: bool = False,
    level: int = logging.INFO,
    logger_factory: Any = None,
) -> None:
    """Configure structured logging for Viewkeeper.

    Call this once at application startup before any logging occurs.

    Args:
        json_format: If True, output JSON logs (for production).
                    If False, output pretty console logs (for development).
        level: Minimum log level (default: INFO)
        logger_factory: Custom logger factory (for testing)
    """
    global _configured

    # Configure stdlib logging (driver-level modules log through it)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=logger_factory or structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str) -> Any:
    """Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__ or module path)

    Returns:
        A bound logger that supports structured logging.
    """
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables that will be included in all subsequent logs.

    Example:
        bind_context(consumer_group="order-view")
        logger.info("started")  # Includes consumer_group
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


def partition_logger(partition: int, consumer_group: str | None = None) -> Any:
    """Get a logger pre-bound with partition context.

    Args:
        partition: The stream partition owned by the caller
        consumer_group: Optional consumer group name

    Returns:
        Logger with partition (and consumer_group) bound
    """
    logger = get_logger("viewkeeper.ingest")
    if consumer_group is not None:
        return logger.bind(partition=partition, consumer_group=consumer_group)
    return logger.bind(partition=partition)
