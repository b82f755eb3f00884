"""Structured logging configuration using structlog.

JSON output for production and console output for development. Modules get
their logger via get_logger(__name__) and log with keyword context:

    logger.info("Change committed", entity_type="ENTRY", audit_id=record.id)

Regulated content (snapshots, justification text, cell values) is never
passed to the logger; only ids, kinds and counts.
"""

import logging
import sys
from typing import Any, cast

import structlog


def setup_logging(level: str = "INFO", format: str = "json") -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: "json" for production, "console" for development.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound to the given name.

    Args:
        name: Logger name, typically the module's __name__.

    Returns:
        A bound structlog logger.
    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
