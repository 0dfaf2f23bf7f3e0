"""Advisory migration lock coordination.

The lock row is cooperative: nothing in the database stops a second
instance from ignoring it.  The coordinator answers "is somebody
migrating?", waits a fixed budget for the answer to become "no", takes
and releases the lock, and clears the row after a failed run.

Every lock read and write runs in its own short transaction on the
migration connection and commits at once, so other instances see a held
lock while the migration itself is still uncommitted.  Callers therefore
use the coordinator between migration transactions, never inside one.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum

from appdb.core.errors import LockTimeoutError
from appdb.core.logging import get_logger
from appdb.execution.retry import RetryContext, RetryPolicy
from appdb.migrations.changelog import ChangelogEngine

logger = get_logger(__name__)

# Five checks, two seconds apart
DEFAULT_LOCK_WAIT = RetryPolicy(max_attempts=5, delay=2.0)


class LockState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    LOCKED = "locked"
    CLEAR = "clear"


class LockCoordinator:
    """Checks, takes, waits for and force-clears the advisory lock of one changelog engine."""

    def __init__(
        self,
        changelog: ChangelogEngine,
        policy: RetryPolicy = DEFAULT_LOCK_WAIT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.changelog = changelog
        self.policy = policy
        self.sleep = sleep
        self.state = LockState.UNKNOWN
        self.locked_by: str | None = None
        self.held = False

    def has_lock(self) -> bool:
        self.state = LockState.CHECKING
        locks = self.changelog.list_locks()
        self.locked_by = locks[0].locked_by if locks else None
        self.state = LockState.LOCKED if locks else LockState.CLEAR
        return bool(locks)

    def _is_clear(self) -> bool:
        with self.changelog.connection.begin():
            return not self.has_lock()

    def wait_for_clear(self) -> None:
        """Return once no lock is held, or raise ``LockTimeoutError``.

        Checks at most ``policy.max_attempts`` times with a fixed delay in
        between.  Never clears a lock itself: it may belong to a live
        instance.
        """
        retry = RetryContext(self.policy, on_retry=self._log_wait, sleep=self.sleep)
        if retry.poll(self._is_clear):
            return

        logger.error(
            "migration_lock_timeout",
            attempts=retry.attempt,
            locked_by=self.locked_by,
        )
        raise LockTimeoutError(retry.attempt, self.locked_by)

    def _log_wait(self, attempt: int, error: BaseException | None, delay: float) -> None:
        logger.warning(
            "migration_lock_held",
            attempt=attempt,
            max_attempts=self.policy.max_attempts,
            locked_by=self.locked_by,
            retry_in=delay,
        )

    def acquire(self, *, steal: bool = False) -> None:
        """Take the lock and commit it, or raise ``MigrationLockError``.

        With ``steal`` any lock already held is released first, whoever
        owns it.  Force uses this to recover from a stale lock.
        """
        with self.changelog.connection.begin():
            if steal:
                stale = [lock.locked_by for lock in self.changelog.list_locks()]
                if stale:
                    self.changelog.force_release_locks()
                    logger.warning("migration_lock_stolen", locked_by=stale)
            self.changelog.acquire_lock()

        self.held = True
        self.state = LockState.LOCKED
        self.locked_by = self.changelog.lock_owner

    def release(self) -> None:
        """Release our own lock and commit."""
        with self.changelog.connection.begin():
            self.changelog.release_lock()

        self.held = False
        self.state = LockState.CLEAR
        self.locked_by = None

    def force_clear(self) -> bool:
        """Best-effort lock release after a failed run.

        Rolls back whatever the connection still has open, then clears
        every lock row in its own committed transaction.  Failures are
        logged and reported as ``False``, never raised: the caller is
        already propagating the original error.
        """
        conn = self.changelog.connection
        try:
            if conn.in_transaction():
                conn.rollback()
            with conn.begin():
                if not self.has_lock():
                    self.held = False
                    return True
                released = self.changelog.force_release_locks()
        except Exception as exc:
            logger.error("migration_lock_force_clear_failed", error=str(exc), exc_info=True)
            return False

        self.held = False
        self.state = LockState.CLEAR
        logger.warning("migration_lock_force_cleared", released=released)
        return True


__all__ = [
    "DEFAULT_LOCK_WAIT",
    "LockCoordinator",
    "LockState",
]
