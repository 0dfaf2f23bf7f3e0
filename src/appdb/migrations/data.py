"""Data migrations - run once, after the schema is current.

Data migrations are plain functions taking a SQLAlchemy ``Connection``.
They register with ``@data_migration`` and run in registration order,
each in its own transaction, recorded by name in ``data_migrations``.

Example::

    from appdb.migrations.data import data_migration

    @data_migration("seed_default_settings")
    def seed_default_settings(conn):
        conn.execute(settings.insert().values(key="theme", value="light"))
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import Column, DateTime, MetaData, String, Table, func, insert, select
from sqlalchemy.engine import Connection

from appdb.core.logging import get_logger
from appdb.core.pool import DatabaseHandle, get_default_handle

logger = get_logger(__name__)

DataMigrationFunc = Callable[[Connection], None]

data_migrations_table = Table(
    "data_migrations",
    MetaData(),
    Column("name", String(255), primary_key=True),
    Column("applied_at", DateTime(timezone=True), nullable=False),
)


@dataclass(frozen=True)
class DataMigration:
    name: str
    func: DataMigrationFunc


# Global data-migration registry, in registration order
_registry: dict[str, DataMigration] = {}


def data_migration(name: str | None = None) -> Callable[[DataMigrationFunc], DataMigrationFunc]:
    """Decorator to register a data migration."""

    def decorator(func: DataMigrationFunc) -> DataMigrationFunc:
        key = name or func.__name__
        if key in _registry:
            raise ValueError(f"Data migration '{key}' is already registered")
        _registry[key] = DataMigration(name=key, func=func)
        logger.debug("data_migration_registered", name=key)
        return func

    return decorator


def list_data_migrations() -> list[str]:
    return list(_registry)


def clear_registry() -> None:
    """Clear registry (for testing)."""
    _registry.clear()


class DataMigrationRunner:
    """Runs every registered data migration that has not run yet.

    The pooled default handle is used, so the runner only works after the
    setup pipeline installed it.
    """

    def __init__(
        self,
        migrations: list[DataMigration] | None = None,
        handle: Callable[[], DatabaseHandle] = get_default_handle,
    ) -> None:
        self._migrations = migrations
        self._handle = handle

    def pending(self, conn: Connection) -> list[DataMigration]:
        done = set(conn.execute(select(data_migrations_table.c.name)).scalars())
        migrations = self._migrations if self._migrations is not None else list(_registry.values())
        return [m for m in migrations if m.name not in done]

    def run_all(self) -> list[str]:
        """Run pending data migrations.  Returns the names that ran.

        Each migration commits with its bookkeeping row; the first failure
        propagates and leaves later migrations pending.
        """
        engine = self._handle().engine
        with engine.begin() as conn:
            data_migrations_table.create(conn, checkfirst=True)
            pending = self.pending(conn)

        ran = []
        for migration in pending:
            with engine.begin() as conn:
                migration.func(conn)
                conn.execute(
                    insert(data_migrations_table).values(
                        name=migration.name, applied_at=func.current_timestamp()
                    )
                )
            ran.append(migration.name)
            logger.info("data_migration_applied", name=migration.name)

        logger.info("data_migrations_finished", ran=len(ran))
        return ran


__all__ = [
    "DataMigration",
    "DataMigrationRunner",
    "clear_registry",
    "data_migration",
    "data_migrations_table",
    "list_data_migrations",
]
