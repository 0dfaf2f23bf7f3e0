"""
Collaborator protocols for the setup pipeline.

Manifesto:
    The setup orchestrator depends on two collaborators it does not own:
    a connectivity checker and a data-migration runner.  Both are passed
    in at construction time and matched structurally, so tests substitute
    plain doubles and deployments substitute their own implementations
    without subclassing anything.

Architecture:
    ::

        protocols.py
        ├── ConnectivityChecker   can the target database be reached?
        ├── DataMigrations        opaque post-step after schema migration
        └── SchemaMigrator        runs one migration direction

    Consumers:
        core/setup.py

Guardrails:
    ❌ DON'T: Read ambient state to decide whether a missing database is fatal
    ✅ DO: Pass ``allow_missing_database`` explicitly at the call site

Tags:
    protocol, connectivity, data-migrations, setup, appdb, contracts

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from appdb.core.connection import ConnectionDescriptor, DatabaseEngine


@runtime_checkable
class ConnectivityChecker(Protocol):
    """Probe whether a database can be reached.

    ``allow_missing_database`` is ``True`` only when probing the
    application's own database, which may legitimately not exist yet (a
    fresh SQLite file).  Every other caller keeps the default and gets a
    failure for a database that does not exist.
    """

    def can_connect(
        self,
        engine: DatabaseEngine,
        descriptor: ConnectionDescriptor,
        *,
        throw_on_failure: bool = False,
        allow_missing_database: bool = False,
    ) -> bool: ...


@runtime_checkable
class DataMigrations(Protocol):
    """Data migrations run after the schema is current.  Failures propagate."""

    def run_all(self) -> Any: ...


@runtime_checkable
class SchemaMigrator(Protocol):
    """Runs one migration direction against a database."""

    def migrate(self, descriptor: ConnectionDescriptor, direction: Any) -> Any: ...


__all__ = [
    "ConnectivityChecker",
    "DataMigrations",
    "SchemaMigrator",
]
