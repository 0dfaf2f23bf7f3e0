"""Pooled engine and the process-wide default database handle.

Manifesto:
    Application code must never query the database before migrations have
    finished.  The pooled engine is therefore created only by the setup
    pipeline, after the schema is current, and published once as the
    default ``DatabaseHandle``.  Everything before that point raises
    ``DatabaseNotReadyError`` instead of racing the migration.

This module provides:

* ``QuotingStyle``           -- Identifier quoting convention per engine.
* ``DatabaseHandle``         -- Pooled engine + quoting + descriptor.
* ``create_pool``            -- Build the pooled SQLAlchemy engine.
* ``install_default_handle`` -- Publish the handle process-wide.
* ``get_default_handle``     -- Read it back (raises before install).

Tags:
    appdb, pool, sqlalchemy, engine, handle, quoting

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine

from appdb.core.connection import ConnectionDescriptor, DatabaseEngine
from appdb.core.errors import DatabaseNotReadyError
from appdb.core.logging import get_logger
from appdb.core.settings import DatabaseSettings

logger = get_logger(__name__)


class QuotingStyle(str, Enum):
    """Identifier quoting convention."""

    ANSI = "ansi"
    SQLITE = "sqlite"
    MYSQL = "mysql"

    @classmethod
    def for_engine(cls, engine: DatabaseEngine) -> QuotingStyle:
        match engine:
            case DatabaseEngine.SQLITE:
                return cls.SQLITE
            case DatabaseEngine.MYSQL:
                return cls.MYSQL
            case _:
                return cls.ANSI

    def quote(self, identifier: str) -> str:
        if self is QuotingStyle.MYSQL:
            return "`" + identifier.replace("`", "``") + "`"
        return '"' + identifier.replace('"', '""') + '"'


@dataclass(frozen=True)
class DatabaseHandle:
    """The application's pooled database access point."""

    engine: Engine
    quoting_style: QuotingStyle
    descriptor: ConnectionDescriptor

    def quote(self, identifier: str) -> str:
        return self.quoting_style.quote(identifier)

    def connect(self) -> Connection:
        return self.engine.connect()

    def dispose(self) -> None:
        self.engine.dispose()


def create_pool(
    descriptor: ConnectionDescriptor,
    settings: DatabaseSettings | None = None,
    **kwargs: Any,
) -> Engine:
    """Create the pooled engine for application queries.

    Parameters
    ----------
    descriptor:
        Target database.
    settings:
        Pool sizing (ignored for SQLite).  Defaults apply when ``None``.
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    url = descriptor.to_url()

    if descriptor.engine.is_embedded:
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    else:
        settings = settings or DatabaseSettings()
        engine = create_engine(
            url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_pre_ping=True,
            **kwargs,
        )

    logger.info("connection_pool_created", target=descriptor.describe())
    return engine


# ── Default handle ───────────────────────────────────────────────────────

_default_handle: DatabaseHandle | None = None
_handle_lock = threading.Lock()


def install_default_handle(engine: Engine, descriptor: ConnectionDescriptor) -> DatabaseHandle:
    """Publish ``engine`` as the process-wide default handle.

    Replaces (and disposes) any previously installed handle.
    """
    global _default_handle
    handle = DatabaseHandle(
        engine=engine,
        quoting_style=QuotingStyle.for_engine(descriptor.engine),
        descriptor=descriptor,
    )
    with _handle_lock:
        previous, _default_handle = _default_handle, handle
    if previous is not None and previous.engine is not engine:
        previous.dispose()
    logger.info("default_handle_installed", quoting=handle.quoting_style.value)
    return handle


def get_default_handle() -> DatabaseHandle:
    handle = _default_handle
    if handle is None:
        raise DatabaseNotReadyError("Database has not been set up yet; call setup_db() first")
    return handle


def reset_default_handle() -> None:
    """Dispose and forget the default handle (for testing)."""
    global _default_handle
    with _handle_lock:
        previous, _default_handle = _default_handle, None
    if previous is not None:
        previous.dispose()


__all__ = [
    "DatabaseHandle",
    "QuotingStyle",
    "create_pool",
    "get_default_handle",
    "install_default_handle",
    "reset_default_handle",
]
