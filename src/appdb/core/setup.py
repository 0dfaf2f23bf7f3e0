"""
Application-database setup pipeline.

Manifesto:
    An instance must never serve requests against a half-migrated
    database.  Setup runs one fixed sequence, once per process, and only
    the last step flips the readiness flag:

    1. verify connectivity (fatal on failure)
    2. bring the schema current, or refuse to start when automatic
       migration is disabled and changesets are pending
    3. create the connection pool and install the default handle
    4. run data migrations (skippable for bulk-load startups)
    5. mark the process ready

Architecture:
    ::

        setup_db()
            │
            ▼
        SetupOrchestrator.setup()     ← one-shot latch
            ├── ConnectivityChecker.can_connect(..., allow_missing_database=True)
            ├── MigrationDriver.migrate(UP)      (retried once)
            │       or migrate(PRINT) → ManualUpgradeRequiredError
            ├── create_pool() → install_default_handle()
            ├── DataMigrations.run_all()
            └── SetupState.mark_ready()

Guardrails:
    ❌ DON'T: Create the pool before migrations finish
    ✅ DO: Let ``get_default_handle()`` raise until setup installs it

    ❌ DON'T: Retry ``LockTimeoutError`` at this level
    ✅ DO: Surface it; the operator decides whether the lock is stale

Tags:
    setup, bootstrap, migrations, readiness, latch, appdb

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy.engine import Engine

from appdb.core.connection import ConnectionDescriptor, descriptor_from_settings
from appdb.core.connectivity import SqlAlchemyConnectivityChecker
from appdb.core.errors import ConnectivityError, LockTimeoutError, ManualUpgradeRequiredError
from appdb.core.logging import get_logger, log_duration
from appdb.core.pool import DatabaseHandle, create_pool, install_default_handle
from appdb.core.protocols import ConnectivityChecker, DataMigrations, SchemaMigrator
from appdb.core.settings import DatabaseSettings
from appdb.execution.retry import RetryContext, RetryPolicy

logger = get_logger(__name__)

# One retry absorbs losing the apply race to another instance.  Unlike a
# retry-on-any-error policy, a lock timeout is never retried.
DEFAULT_SETUP_RETRY = RetryPolicy(max_attempts=2, give_up_on=(LockTimeoutError,))


class SetupState:
    """Process-wide readiness flag.  Set once, never reset."""

    def __init__(self) -> None:
        self._ready = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self) -> None:
        with self._lock:
            if self._ready.is_set():
                raise RuntimeError("SetupState is already marked ready")
            self._ready.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until ready or ``timeout`` elapses.  Returns readiness."""
        return self._ready.wait(timeout)


class SetupOrchestrator:
    """Runs the setup pipeline at most once.

    Concurrent and repeated callers of ``setup()`` all observe the result
    (or the failure) of the single run.
    """

    def __init__(
        self,
        settings: DatabaseSettings | None = None,
        *,
        connectivity: ConnectivityChecker | None = None,
        data_migrations: DataMigrations | None = None,
        driver: SchemaMigrator | None = None,
        state: SetupState | None = None,
        pool_factory: Callable[[ConnectionDescriptor, DatabaseSettings], Engine] = create_pool,
        setup_retry: RetryPolicy = DEFAULT_SETUP_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or DatabaseSettings()
        self.connectivity = connectivity or SqlAlchemyConnectivityChecker()
        self.data_migrations = data_migrations
        self.driver = driver
        self.state = state or SetupState()
        self.pool_factory = pool_factory
        self.setup_retry = setup_retry
        self.sleep = sleep

        self._latch = threading.Lock()
        self._finished = False
        self._handle: DatabaseHandle | None = None
        self._error: BaseException | None = None

    def setup(self) -> DatabaseHandle:
        with self._latch:
            if not self._finished:
                try:
                    self._handle = self._run()
                except BaseException as exc:
                    self._error = exc
                    raise
                finally:
                    self._finished = True

        if self._error is not None:
            raise self._error
        assert self._handle is not None
        return self._handle

    # ── Pipeline ─────────────────────────────────────────────────────────

    def _run(self) -> DatabaseHandle:
        descriptor = descriptor_from_settings(self.settings)
        with log_duration("database_setup", engine=descriptor.engine.value):
            self._verify_connectivity(descriptor)
            self._migrate_schema(descriptor)

            engine = self.pool_factory(descriptor, self.settings)
            handle = install_default_handle(engine, descriptor)

            self._run_data_migrations()
            self.state.mark_ready()

        logger.info("database_ready", target=descriptor.describe())
        return handle

    def _verify_connectivity(self, descriptor: ConnectionDescriptor) -> None:
        logger.info("verifying_database_connectivity", target=descriptor.describe())
        connected = self.connectivity.can_connect(
            descriptor.engine,
            descriptor,
            throw_on_failure=True,
            allow_missing_database=True,
        )
        if not connected:
            raise ConnectivityError(f"Unable to connect to {descriptor.describe()}")

    def _migrate_schema(self, descriptor: ConnectionDescriptor) -> None:
        # Imported here: the migrations package imports appdb.core
        from appdb.migrations.driver import Direction, MigrationDriver

        driver = self.driver or MigrationDriver(self.settings.changelog_dir, sleep=self.sleep)

        if self.settings.db_automigrate:
            retry = RetryContext(self.setup_retry, on_retry=self._log_retry, sleep=self.sleep)
            retry.run(driver.migrate, descriptor, Direction.UP)
            return

        result = driver.migrate(descriptor, Direction.PRINT)
        if not result.pending:
            logger.info("database_schema_current")
            return

        logger.error(
            "database_upgrade_required",
            pending=result.pending,
            hint="Automatic migration is disabled. Run the SQL below, "
            "or start with APPDB_DB_AUTOMIGRATE=true.",
            sql=result.sql,
        )
        raise ManualUpgradeRequiredError(result.sql, result.pending)

    def _run_data_migrations(self) -> None:
        if self.settings.disable_data_migrations:
            logger.warning("data_migrations_disabled")
            return

        from appdb.migrations.data import DataMigrationRunner

        runner = self.data_migrations or DataMigrationRunner()
        runner.run_all()

    def _log_retry(self, attempt: int, error: BaseException | None, delay: float) -> None:
        logger.warning("schema_migration_retry", attempt=attempt, error=str(error))


# ── Process-wide default ─────────────────────────────────────────────────

_default_orchestrator: SetupOrchestrator | None = None
_default_lock = threading.Lock()


def get_orchestrator(settings: DatabaseSettings | None = None, **kwargs: Any) -> SetupOrchestrator:
    """Return the process-wide orchestrator, creating it on first use.

    Arguments are only honoured by the first call.
    """
    global _default_orchestrator
    with _default_lock:
        if _default_orchestrator is None:
            _default_orchestrator = SetupOrchestrator(settings, **kwargs)
        return _default_orchestrator


def setup_db(settings: DatabaseSettings | None = None, **kwargs: Any) -> DatabaseHandle:
    """Set up the application database once per process."""
    return get_orchestrator(settings, **kwargs).setup()


def db_is_setup() -> bool:
    orchestrator = _default_orchestrator
    return orchestrator is not None and orchestrator.state.is_ready


def reset_setup() -> None:
    """Forget the process-wide orchestrator (for testing)."""
    global _default_orchestrator
    with _default_lock:
        _default_orchestrator = None


__all__ = [
    "DEFAULT_SETUP_RETRY",
    "SetupOrchestrator",
    "SetupState",
    "db_is_setup",
    "get_orchestrator",
    "reset_setup",
    "setup_db",
]
