"""Migration driver.

Runs one migration direction against the application database.  The
changeset work runs in one transaction that rolls back unless it is marked
successful; the advisory lock is taken before it and released after it,
each in a short transaction of its own, so other instances see the lock
while the work is in flight.

Example::

    from appdb.migrations.driver import Direction, migrate

    result = migrate(descriptor, Direction.UP)
    print(f"Applied {len(result.applied)} changesets")
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import TracebackType

from sqlalchemy.engine import Connection, RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from appdb.core.connection import ConnectionDescriptor, create_migration_engine
from appdb.core.errors import MigrationLockError
from appdb.core.logging import LogContext, get_logger
from appdb.execution.retry import RetryContext, RetryPolicy, retry_retryable
from appdb.migrations.bookkeeping import EXEC_TYPE_FORCED
from appdb.migrations.changelog import ChangelogEngine
from appdb.migrations.consolidation import consolidate_changesets
from appdb.migrations.locks import DEFAULT_LOCK_WAIT, LockCoordinator

logger = get_logger(__name__)

# One attempt plus three retries of the whole batch
DEFAULT_APPLY_RETRY = retry_retryable(max_attempts=4)


class Direction(str, Enum):
    UP = "up"
    FORCE = "force"
    DOWN_ONE = "down-one"
    PRINT = "print"
    RELEASE_LOCKS = "release-locks"

    @property
    def is_mutating(self) -> bool:
        return self is not Direction.PRINT


@dataclass
class MigrationResult:
    """Result of one migration run."""

    direction: Direction
    applied: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    failed_statements: dict[str, str] = field(default_factory=dict)
    rolled_back: str | None = None
    locks_released: int = 0
    sql: str = ""
    elapsed_ms: float = 0.0

    @property
    def success(self) -> bool:
        return len(self.failed_statements) == 0


@dataclass
class MigrationStatus:
    applied: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    locked_by: list[str] = field(default_factory=list)


class MigrationTransaction:
    """Transaction that rolls back on exit unless ``mark_successful()`` was called."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn
        self.successful = False
        self._tx: RootTransaction | None = None

    def __enter__(self) -> MigrationTransaction:
        self._tx = self.conn.begin()
        return self

    def mark_successful(self) -> None:
        self.successful = True

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        assert self._tx is not None
        if self.successful and exc_type is None:
            self._tx.commit()
        else:
            self._tx.rollback()


class MigrationDriver:
    """Executes migration directions against one database.

    Parameters
    ----------
    changelog_dir
        Alembic script directory; the bundled changelog when ``None``.
    lock_policy
        How long ``Up`` waits for a held lock to clear.
    apply_policy
        Retry budget for applying the ``Up`` batch.
    sleep
        Injected into every retry loop.
    """

    def __init__(
        self,
        changelog_dir: str | Path | None = None,
        *,
        lock_policy: RetryPolicy = DEFAULT_LOCK_WAIT,
        apply_policy: RetryPolicy = DEFAULT_APPLY_RETRY,
        sleep: Callable[[float], None] = time.sleep,
        lock_owner: str | None = None,
    ) -> None:
        self.changelog_dir = changelog_dir
        self.lock_policy = lock_policy
        self.apply_policy = apply_policy
        self.sleep = sleep
        self.lock_owner = lock_owner

    def migrate(self, descriptor: ConnectionDescriptor, direction: Direction | str) -> MigrationResult:
        direction = Direction(direction)
        engine = create_migration_engine(descriptor)
        started = time.perf_counter()
        try:
            with (
                LogContext(direction=direction.value, run_id=uuid.uuid4().hex[:12]),
                engine.connect() as conn,
            ):
                logger.info("migration_started", target=descriptor.describe())
                result = self._run(conn, direction)
        finally:
            engine.dispose()

        result.elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "migration_finished",
            direction=direction.value,
            applied=len(result.applied),
            failed_statements=len(result.failed_statements),
            elapsed_ms=result.elapsed_ms,
        )
        return result

    def status(self, descriptor: ConnectionDescriptor) -> MigrationStatus:
        """Read-only snapshot of applied, pending and locked state."""
        engine = create_migration_engine(descriptor)
        try:
            with engine.connect() as conn, MigrationTransaction(conn):
                changelog = ChangelogEngine(conn, self.changelog_dir, lock_owner=self.lock_owner)
                consolidate_changesets(conn, changelog.canonical_filename)
                return MigrationStatus(
                    applied=[row.id for row in changelog.list_applied()],
                    pending=[cs.id for cs in changelog.list_unrun()],
                    locked_by=[lock.locked_by or "?" for lock in changelog.list_locks()],
                )
        finally:
            engine.dispose()

    def _run(self, conn: Connection, direction: Direction) -> MigrationResult:
        result = MigrationResult(direction=direction)
        locks: LockCoordinator | None = None
        try:
            with MigrationTransaction(conn) as tx:
                changelog = ChangelogEngine(conn, self.changelog_dir, lock_owner=self.lock_owner)
                consolidate_changesets(conn, changelog.canonical_filename)
                if direction is Direction.PRINT:
                    result.pending = [cs.id for cs in changelog.list_unrun()]
                    result.sql = changelog.generate_sql()
                    return result
                tx.mark_successful()

            locks = LockCoordinator(changelog, self.lock_policy, self.sleep)
            self._dispatch(conn, changelog, locks, direction, result)
        except MigrationLockError:
            logger.error("migration_blocked_by_lock", direction=direction.value)
            raise
        except Exception as exc:
            logger.error("migration_failed", direction=direction.value, error=str(exc))
            # Only a lock this run took can be dangling
            if locks is not None and locks.held:
                locks.force_clear()
            raise
        return result

    def _dispatch(
        self,
        conn: Connection,
        changelog: ChangelogEngine,
        locks: LockCoordinator,
        direction: Direction,
        result: MigrationResult,
    ) -> None:
        match direction:
            case Direction.UP:
                result.applied = self._up(conn, changelog, locks)
            case Direction.FORCE:
                self._force(conn, changelog, locks, result)
            case Direction.DOWN_ONE:
                result.rolled_back = self._down_one(conn, changelog, locks)
            case Direction.RELEASE_LOCKS:
                with MigrationTransaction(conn) as tx:
                    result.locks_released = changelog.force_release_locks()
                    tx.mark_successful()
                logger.warning("migration_locks_released", released=result.locks_released)

    # ── Up ───────────────────────────────────────────────────────────────

    def _up(self, conn: Connection, changelog: ChangelogEngine, locks: LockCoordinator) -> list[str]:
        with MigrationTransaction(conn):
            unrun = changelog.has_unrun()
        if not unrun:
            logger.info("no_unrun_changesets")
            return []

        locks.wait_for_clear()
        locks.acquire()

        retry = RetryContext(self.apply_policy, on_retry=self._log_retry, sleep=self.sleep)
        applied = retry.run(self._apply_batch, conn, changelog)
        locks.release()

        if not applied:
            # Another instance finished while we waited
            logger.info("no_unrun_changesets", after_wait=True)
        return applied

    def _apply_batch(self, conn: Connection, changelog: ChangelogEngine) -> list[str]:
        with MigrationTransaction(conn) as tx:
            applied = changelog.update()
            tx.mark_successful()
        return applied

    def _log_retry(self, attempt: int, error: BaseException | None, delay: float) -> None:
        logger.warning(
            "changeset_batch_retry",
            attempt=attempt,
            max_attempts=self.apply_policy.max_attempts,
            error=str(error),
        )

    # ── Force ────────────────────────────────────────────────────────────

    def _force(
        self,
        conn: Connection,
        changelog: ChangelogEngine,
        locks: LockCoordinator,
        result: MigrationResult,
    ) -> None:
        with MigrationTransaction(conn) as tx:
            unrun = [cs.id for cs in changelog.list_unrun()]
            cleared = changelog.clear_checksums()
            tx.mark_successful()
        logger.info("checksums_cleared", rows=cleared)
        if not unrun:
            return

        # Force is the recovery path; a stale lock must not block it
        locks.acquire(steal=True)
        with MigrationTransaction(conn) as tx:
            changelog.stamp_version()
            for changeset_id, statement in changelog.statements(exec_type=EXEC_TYPE_FORCED):
                try:
                    with conn.begin_nested():
                        conn.exec_driver_sql(statement, execution_options={"no_parameters": True})
                except SQLAlchemyError as exc:
                    logger.warning(
                        "forced_statement_failed",
                        changeset=changeset_id,
                        statement=statement,
                        error=str(exc),
                    )
                    result.failed_statements[statement] = str(exc)
            tx.mark_successful()
        locks.release()

        with MigrationTransaction(conn):
            recorded = {row.id for row in changelog.list_applied()}
        result.applied = [changeset_id for changeset_id in unrun if changeset_id in recorded]

    # ── DownOne ──────────────────────────────────────────────────────────

    def _down_one(
        self, conn: Connection, changelog: ChangelogEngine, locks: LockCoordinator
    ) -> str | None:
        with MigrationTransaction(conn):
            target = changelog.last_applied()
        if target is None:
            logger.info("nothing_to_roll_back")
            return None

        locks.acquire()
        with MigrationTransaction(conn) as tx:
            rolled_back = changelog.rollback_one()
            tx.mark_successful()
        locks.release()
        return rolled_back


def migrate(
    descriptor: ConnectionDescriptor,
    direction: Direction | str,
    changelog_dir: str | Path | None = None,
) -> MigrationResult:
    """Run one direction with the default retry budgets."""
    return MigrationDriver(changelog_dir).migrate(descriptor, direction)


__all__ = [
    "DEFAULT_APPLY_RETRY",
    "Direction",
    "MigrationDriver",
    "MigrationResult",
    "MigrationStatus",
    "MigrationTransaction",
    "migrate",
]
