"""
appdb Logging - structured logging for the setup and migration pipeline.

Manifesto:
    Database setup runs unattended during deployments.  When an instance
    refuses to start, the logs are the only record of which changeset,
    lock holder, or connectivity check stopped it.  Every event is a
    snake_case name plus key/value context so log aggregation can filter
    on ``direction``, ``changeset`` and ``engine``.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="appdb")
            │
            ▼
        structlog processor chain:
            1. TimeStamper (iso)
            2. merge_contextvars      ← LogContext(direction=..., run_id=...)
            3. add_log_level / add_logger_name
            4. add_service_metadata
            5. JSONRenderer (not a tty) or ConsoleRenderer (tty)

Examples:
    >>> from appdb.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", service="appdb")
    >>> logger = get_logger(__name__)
    >>> logger.info("migrations_checking", engine="postgres")

Tags:
    logging, structlog, observability, appdb

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Store service name for metadata
_SERVICE_NAME = "appdb"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Make field names Elasticsearch/ECS compatible."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")

    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")

    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "appdb",
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    shared_processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        shared_processors.append(_elasticsearch_compatible)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Alembic logs "Running upgrade a -> b" through the standard library.
    # stderr keeps stdout free for printed SQL.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
        force=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(direction="up", run_id="abc123"):
            logger.info("migrations_started")
        # Context cleared here
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


@contextmanager
def log_duration(event: str, **fields: Any) -> Iterator[None]:
    """Log ``<event>_started`` / ``<event>_finished`` with elapsed milliseconds.

    The finished event is logged even when the body raises, with
    ``failed=True``; the exception propagates unchanged.
    """
    logger = get_logger("appdb.timing")
    logger.info(f"{event}_started", **fields)
    start = time.perf_counter()
    failed = True
    try:
        yield
        failed = False
    finally:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(f"{event}_finished", elapsed_ms=elapsed_ms, failed=failed, **fields)


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "LogContext",
    "log_duration",
]
