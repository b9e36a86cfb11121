"""Structured logging configuration using structlog.

Call ``setup_logging`` once at process start (the service lifespan does this).
Modules obtain a logger with ``get_logger(__name__)`` and pass context as
keyword arguments::

    logger.info("Snapshot created", document_id=document_id, snapshot_index=3)
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr.

    Args:
        level: Minimum log level name (debug, info, warning, error).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with the calling module's name."""
    return structlog.get_logger(component=name)  # type: ignore[return-value]
