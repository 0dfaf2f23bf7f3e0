"""Connection descriptors: where the application database lives.

This module is the **single entry point** for turning configuration into
something SQLAlchemy can connect to.  A ``ConnectionDescriptor`` is built
either from a connection URI or from discrete settings fields, and is
immutable afterwards.

Supported engines
-----------------
==============  =============================================  ===========================
Engine          Example URI / setting                          SQLAlchemy driver
==============  =============================================  ===========================
``sqlite``      ``APPDB_DB_FILE=/var/lib/app/app.sqlite``      ``sqlite`` (pysqlite)
``postgres``    ``postgres://user:pw@host:5432/db?sslmode=…``  ``postgresql+psycopg2``
``mysql``       ``mysql://user:pw@host:3306/db``               ``mysql+mysqlconnector``
==============  =============================================  ===========================

Usage
-----
::

    from appdb.core.connection import descriptor_from_settings, create_migration_engine

    descriptor = descriptor_from_settings(DatabaseSettings())
    engine = create_migration_engine(descriptor)

Design
------
The engine tag fully determines which descriptor fields are populated:
SQLite descriptors carry only ``path``; networked descriptors carry
``host``/``port``/``dbname``/credentials and never a path.  ``to_url()``
is the one serialization function per engine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, unquote

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import NullPool

from appdb.core.errors import InvalidConfigError, MissingConfigError
from appdb.core.logging import get_logger
from appdb.core.settings import DatabaseSettings

logger = get_logger(__name__)


# ── Engine tags ──────────────────────────────────────────────────────────


class DatabaseEngine(str, Enum):
    """Supported application-database engines."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"
    MYSQL = "mysql"

    @property
    def is_embedded(self) -> bool:
        return self is DatabaseEngine.SQLITE


_DEFAULT_PORTS = {
    DatabaseEngine.POSTGRES: 5432,
    DatabaseEngine.MYSQL: 3306,
}

_DRIVERNAMES = {
    DatabaseEngine.SQLITE: "sqlite",
    DatabaseEngine.POSTGRES: "postgresql+psycopg2",
    DatabaseEngine.MYSQL: "mysql+mysqlconnector",
}

_URI_SCHEMES = {
    "postgres": DatabaseEngine.POSTGRES,
    "postgresql": DatabaseEngine.POSTGRES,
    "mysql": DatabaseEngine.MYSQL,
}


# ── ConnectionDescriptor ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Immutable description of how to reach the application database."""

    engine: DatabaseEngine

    path: str | None = None
    """SQLite only: absolute path of the database file."""

    host: str | None = None
    port: int | None = None
    dbname: str | None = None
    user: str | None = None
    password: str | None = field(default=None, repr=False)

    options: tuple[tuple[str, str], ...] = ()
    """Driver options, e.g. ``(("sslmode", "require"),)``."""

    def __post_init__(self) -> None:
        if self.engine.is_embedded:
            if not self.path:
                raise MissingConfigError("db_file", "SQLite descriptors require a file path")
            if self.host or self.dbname:
                raise InvalidConfigError(
                    "db_host", self.host, "SQLite descriptors cannot carry host/dbname fields"
                )
        else:
            if not self.host:
                raise MissingConfigError("db_host")
            if not self.dbname:
                raise MissingConfigError("db_dbname")
            if self.path:
                raise InvalidConfigError(
                    "db_file", self.path, f"{self.engine.value} descriptors cannot carry a file path"
                )

    @property
    def query(self) -> dict[str, str]:
        return dict(self.options)

    def to_url(self) -> URL:
        """Render the SQLAlchemy URL for this descriptor."""
        match self.engine:
            case DatabaseEngine.SQLITE:
                return URL.create(_DRIVERNAMES[self.engine], database=self.path)
            case DatabaseEngine.POSTGRES | DatabaseEngine.MYSQL:
                return URL.create(
                    _DRIVERNAMES[self.engine],
                    username=self.user,
                    password=self.password,
                    host=self.host,
                    port=self.port or _DEFAULT_PORTS[self.engine],
                    database=self.dbname,
                    query=self.query,
                )
            case _:
                raise InvalidConfigError("db_type", self.engine)

    def describe(self) -> str:
        """Human-readable target without credentials."""
        if self.engine.is_embedded:
            return f"{self.engine.value}:{self.path}"
        port = self.port or _DEFAULT_PORTS[self.engine]
        return f"{self.engine.value}://{self.host}:{port}/{self.dbname}"


# ── URI parsing ──────────────────────────────────────────────────────────

_CONNECTION_URI = re.compile(
    r"^(?:jdbc:)?(?P<scheme>[^:/@]+)://"
    r"(?:(?P<user>[^:/@]+)(?::(?P<password>[^:@]+))?@)?"
    r"(?P<host>[^:@/]+)(?::(?P<port>\d+))?"
    r"/(?P<dbname>[^/?]+)"
    r"(?:\?(?P<query>.*))?$"
)


def parse_connection_uri(uri: str) -> ConnectionDescriptor:
    """Parse a connection URI like ``postgres://cam@localhost:5432/app?ssl=true``.

    Query parameters become descriptor options.  Raises
    ``InvalidConfigError`` for malformed URIs and unsupported schemes.
    """
    match = _CONNECTION_URI.match(uri.strip())
    if match is None:
        raise InvalidConfigError("db_connection_uri", "<redacted>", "Malformed database connection URI")

    scheme = match.group("scheme").lower()
    engine = _URI_SCHEMES.get(scheme)
    if engine is None:
        raise InvalidConfigError(
            "db_connection_uri", scheme, f"Unsupported database connection URI scheme: {scheme!r}"
        )

    options = tuple(parse_qsl(match.group("query") or "", keep_blank_values=True))
    user = match.group("user")
    password = match.group("password")
    descriptor = ConnectionDescriptor(
        engine=engine,
        host=match.group("host"),
        port=int(match.group("port")) if match.group("port") else None,
        dbname=match.group("dbname"),
        user=unquote(user) if user else None,
        password=unquote(password) if password else None,
        options=options,
    )

    query = descriptor.query
    if engine is DatabaseEngine.POSTGRES and query.get("ssl") == "true" and "sslmode" not in query:
        logger.warning(
            "postgres_ssl_without_sslmode",
            hint="You may need to add `?sslmode=require` to your application DB connection string.",
        )

    return descriptor


def descriptor_from_settings(settings: DatabaseSettings) -> ConnectionDescriptor:
    """Build the application-database descriptor.

    The connection URI wins when present; otherwise ``db_type`` picks which
    discrete fields are read.
    """
    if settings.db_connection_uri:
        descriptor = parse_connection_uri(settings.db_connection_uri)
    else:
        engine = DatabaseEngine(settings.db_type)
        if engine.is_embedded:
            descriptor = ConnectionDescriptor(
                engine=engine,
                path=str(Path(settings.db_file).expanduser().resolve()),
            )
        else:
            descriptor = ConnectionDescriptor(
                engine=engine,
                host=settings.db_host,
                port=settings.db_port,
                dbname=settings.db_dbname,
                user=settings.db_user,
                password=settings.db_pass,
            )

    if descriptor.engine.is_embedded:
        logger.warning(
            "embedded_database_not_recommended",
            path=descriptor.path,
            hint="For production deployments use Postgres or MySQL, and back up the file regularly.",
        )

    return descriptor


# ── Engines for a single migration run ───────────────────────────────────


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT and transactional DDL work on pysqlite."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection: Any, _rec: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def create_migration_engine(descriptor: ConnectionDescriptor, **kwargs: Any) -> Engine:
    """Create an unpooled engine for one migration run.

    Every statement of a run goes through one connection and one
    transaction, so pooling would only keep idle connections around.
    """
    engine = create_engine(descriptor.to_url(), poolclass=NullPool, **kwargs)
    if descriptor.engine.is_embedded:
        _enable_sqlite_savepoints(engine)
    return engine


__all__ = [
    "DatabaseEngine",
    "ConnectionDescriptor",
    "parse_connection_uri",
    "descriptor_from_settings",
    "create_migration_engine",
]
