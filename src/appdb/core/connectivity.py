"""Connectivity checks for configured databases."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from appdb.core.connection import ConnectionDescriptor, DatabaseEngine
from appdb.core.errors import ConnectivityError
from appdb.core.logging import get_logger

logger = get_logger(__name__)


class SqlAlchemyConnectivityChecker:
    """Opens one unpooled connection and runs ``SELECT 1``."""

    def can_connect(
        self,
        engine: DatabaseEngine,
        descriptor: ConnectionDescriptor,
        *,
        throw_on_failure: bool = False,
        allow_missing_database: bool = False,
    ) -> bool:
        """Check whether ``descriptor`` can be reached.

        With ``allow_missing_database=False`` a SQLite file that does not
        exist counts as a failure and is not created by the check.
        """
        try:
            if engine is not descriptor.engine:
                raise ConnectivityError(
                    f"Descriptor is for {descriptor.engine.value}, not {engine.value}"
                )
            if engine.is_embedded and not allow_missing_database:
                if not Path(descriptor.path or "").exists():
                    raise ConnectivityError(f"Database file does not exist: {descriptor.path}")
            self._try_connect(descriptor)
        except (ConnectivityError, SQLAlchemyError) as exc:
            logger.warning(
                "database_unreachable",
                engine=engine.value,
                target=descriptor.describe(),
                error=str(exc),
            )
            if throw_on_failure:
                if isinstance(exc, ConnectivityError):
                    raise
                raise ConnectivityError(
                    f"Unable to connect to {descriptor.describe()}: {exc}", cause=exc
                ).with_context(engine=engine.value) from exc
            return False

        logger.debug("database_reachable", engine=engine.value, target=descriptor.describe())
        return True

    def _try_connect(self, descriptor: ConnectionDescriptor) -> None:
        check_engine = create_engine(descriptor.to_url(), poolclass=NullPool)
        try:
            with check_engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        finally:
            check_engine.dispose()


__all__ = ["SqlAlchemyConnectivityChecker"]
