"""
Structured error types for appdb.

Every failure the setup pipeline can surface is an ``AppDbError`` carrying
a category, an explicit retry flag, structured context, and the chained
underlying cause.  The retry combinators in ``appdb.execution.retry``
consult ``retryable`` instead of guessing from exception types.

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────────┐
        │                          AppDbError                            │
        │         (category, retryable, context, cause)                 │
        ├───────────────────────────────────────────────────────────────┤
        │                                                                │
        │  ConfigError          ConnectivityError    DatabaseNotReady   │
        │  (CONFIG)             (DATABASE)           (DATABASE)         │
        │     │                                                          │
        │  MissingConfigError                                            │
        │  InvalidConfigError                                            │
        │                                                                │
        │  MigrationError (MIGRATION)                                    │
        │     ├── MigrationEngineError     (retryable)                   │
        │     │      └── ChecksumMismatchError                           │
        │     ├── MigrationLockError                                     │
        │     │      └── LockTimeoutError                                │
        │     └── ManualUpgradeRequiredError                             │
        └───────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Catch ``MigrationLockError`` and release locks
    ✅ DO: Let lock failures propagate; the lock may belong to a live instance

    ❌ DON'T: Replace the original failure with a cleanup failure
    ✅ DO: Pass the underlying exception as ``cause=``

Tags:
    error-handling, exception-hierarchy, retry-logic, migrations, appdb

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    DATABASE = "DATABASE"         # Connectivity, pool, handle not ready
    MIGRATION = "MIGRATION"       # Changelog engine, locks, manual upgrade
    CONFIG = "CONFIG"             # Missing config, invalid settings
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging.

    Attributes:
        engine: Database engine tag (``sqlite``, ``postgres``, ``mysql``)
        direction: Migration direction being executed
        changeset: Changeset id involved in the failure
        statement: SQL statement involved in the failure
        metadata: Additional key-value pairs
    """

    engine: str | None = None
    direction: str | None = None
    changeset: str | None = None
    statement: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["engine", "direction", "changeset", "statement"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class AppDbError(Exception):
    """
    Base exception for all appdb errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites only pass a message (and usually a ``cause``).

    Examples:
        >>> error = AppDbError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> try:
        ...     raise ConnectionRefusedError("port 5432")
        ... except ConnectionRefusedError as e:
        ...     error = ConnectivityError("Unable to connect", cause=e)
        >>> error.cause
        ConnectionRefusedError('port 5432')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> AppDbError:
        """
        Add context to this error (fluent API).

        Usage:
            raise MigrationEngineError("Upgrade failed", cause=exc).with_context(
                engine="postgres",
                changeset="0003_add_index",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }

        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict

        if self.cause is not None:
            result["cause"] = str(self.cause)

        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS (Never Retryable)
# =============================================================================


class ConfigError(AppDbError):
    """Configuration error - missing or invalid settings."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """Required configuration is missing."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(message or f"Missing required configuration: {key}")
        self.key = key


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")
        self.key = key
        self.value = value


# =============================================================================
# DATABASE ERRORS
# =============================================================================


class ConnectivityError(AppDbError):
    """The application database cannot be reached. Fatal during setup."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class DatabaseNotReadyError(AppDbError):
    """The process-wide database handle was requested before setup finished."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


# =============================================================================
# MIGRATION ERRORS
# =============================================================================


class MigrationError(AppDbError):
    """Base class for schema-migration failures."""

    default_category = ErrorCategory.MIGRATION
    default_retryable = False


class MigrationEngineError(MigrationError):
    """The changelog engine failed to inspect, apply or roll back changesets.

    Wraps the underlying SQLAlchemy/Alembic error as ``cause``.  Retryable:
    a concurrent instance may have won the race for the same changesets.
    """

    default_retryable = True


class ChecksumMismatchError(MigrationEngineError):
    """An applied changeset's script changed after it was applied."""

    default_retryable = False

    def __init__(self, changeset: str, stored: str, current: str):
        super().__init__(
            f"Changeset {changeset} was modified after it was applied "
            f"(stored checksum {stored}, current checksum {current}). "
            "Run `appdb migrate force` to clear stored checksums."
        )
        self.with_context(changeset=changeset)


class MigrationLockError(MigrationError):
    """The advisory migration lock prevented progress."""


class LockTimeoutError(MigrationLockError):
    """The migration lock was still held after the fixed wait budget."""

    def __init__(self, attempts: int, locked_by: str | None = None):
        holder = f" (held by {locked_by})" if locked_by else ""
        super().__init__(
            f"Database has migration lock{holder}; cannot run migrations. "
            f"Gave up after {attempts} checks. "
            "You can force-release these locks by running `appdb migrate release-locks`."
        )
        self.attempts = attempts
        self.locked_by = locked_by


class ManualUpgradeRequiredError(MigrationError):
    """Automatic migration is disabled but changesets are pending."""

    def __init__(self, sql: str, pending: list[str] | None = None):
        super().__init__("Database requires manual upgrade.")
        self.sql = sql
        self.pending = pending or []


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable.

    Works with both AppDbError (uses the retryable attribute) and
    foreign exceptions (never retryable).
    """
    if isinstance(error, AppDbError):
        return error.retryable
    return False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "AppDbError",
    "ConfigError",
    "MissingConfigError",
    "InvalidConfigError",
    "ConnectivityError",
    "DatabaseNotReadyError",
    "MigrationError",
    "MigrationEngineError",
    "ChecksumMismatchError",
    "MigrationLockError",
    "LockTimeoutError",
    "ManualUpgradeRequiredError",
    "is_retryable",
]
