"""Bounded retry combinators with fixed delays.

Every retry loop in the setup pipeline has an explicit attempt budget and
a fixed delay; nothing backs off and nothing waits forever.

Example:
    >>> from appdb.execution.retry import RetryContext, RetryPolicy
    >>>
    >>> policy = RetryPolicy(max_attempts=5, delay=2.0)
    >>> cleared = RetryContext(policy).poll(lambda: not lock_is_held())
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from appdb.core.errors import is_retryable

T = TypeVar("T")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _always(error: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-budget retry configuration.

    Attributes:
        max_attempts: Total number of attempts, including the first one
        delay: Constant delay in seconds between attempts
        retry_if: Predicate deciding whether a failure may be retried
        give_up_on: Exception types that are never retried
    """

    max_attempts: int = 1
    delay: float = 0.0
    retry_if: Callable[[BaseException], bool] = _always
    give_up_on: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Check whether another attempt is allowed after ``attempt`` attempts."""
        if attempt >= self.max_attempts:
            return False
        if error is not None:
            if isinstance(error, self.give_up_on):
                return False
            return self.retry_if(error)
        return True


def retry_retryable(max_attempts: int, delay: float = 0.0) -> RetryPolicy:
    """Policy that only retries errors flagged ``retryable``."""
    return RetryPolicy(max_attempts=max_attempts, delay=delay, retry_if=is_retryable)


@dataclass
class RetryContext:
    """Tracks one retry loop.

    ``sleep`` is injectable so tests can observe delays without waiting.

    Example:
        >>> ctx = RetryContext(RetryPolicy(max_attempts=3))
        >>> result = ctx.run(apply_changesets)
    """

    policy: RetryPolicy
    on_retry: Callable[[int, BaseException | None, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, BaseException, datetime]] = field(default_factory=list, init=False)

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since the loop was created."""
        return (utcnow() - self.started_at).total_seconds()

    def _pause(self, error: BaseException | None) -> None:
        delay = self.policy.delay
        if self.on_retry:
            self.on_retry(self.attempt, error, delay)
        if delay > 0:
            self.sleep(delay)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` until it returns, re-raising the last failure once
        the policy refuses another attempt.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.policy.should_retry(self.attempt, e):
                    raise

                self._pause(e)

    def poll(self, check: Callable[[], bool]) -> bool:
        """Call ``check`` until it returns ``True`` or the budget is spent.

        Returns the last value of ``check``.  Exceptions from ``check``
        propagate immediately.
        """
        while True:
            self.attempt += 1
            if check():
                return True
            if not self.policy.should_retry(self.attempt):
                return False
            self._pause(None)


__all__ = [
    "RetryPolicy",
    "RetryContext",
    "retry_retryable",
]
