"""
Shared pytest fixtures for appdb tests.

This module provides:
- Generated Alembic changelogs under ``tmp_path``
- SQLite descriptors, settings and an inspection engine
- A recording ``sleep`` so retry loops never wait
- Captured structlog events instead of console output
- Cleanup of process-wide state (default handle, setup latch, registries)

Usage:
    Fixtures are auto-discovered by pytest::

        def test_up(driver, sqlite_descriptor, sleeps):
            driver.migrate(sqlite_descriptor, Direction.UP)
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from structlog.testing import capture_logs

from appdb.core.connection import ConnectionDescriptor, DatabaseEngine
from appdb.core.pool import reset_default_handle
from appdb.core.settings import DatabaseSettings
from appdb.core.setup import reset_setup
from appdb.migrations.data import clear_registry as clear_data_migrations
from appdb.migrations.driver import MigrationDriver
from tests._support.changelogs import Rev, write_changelog

# =============================================================================
# Changelogs
# =============================================================================


@pytest.fixture
def changelog_dir(tmp_path: Path) -> Path:
    return tmp_path / "changelog"


@pytest.fixture
def make_changelog(changelog_dir: Path) -> Callable[..., Path]:
    """Factory writing revisions into ``changelog_dir``."""

    def factory(*revisions: Rev, parent: str | None = None) -> Path:
        return write_changelog(changelog_dir, *revisions, parent=parent)

    return factory


@pytest.fixture
def ab_changelog(make_changelog: Callable[..., Path]) -> Path:
    """Two changesets, A then B, each creating one table."""
    return make_changelog(
        Rev("rev_a", ["CREATE TABLE a (id INTEGER PRIMARY KEY)"], ["DROP TABLE a"]),
        Rev("rev_b", ["CREATE TABLE b (id INTEGER PRIMARY KEY)"], ["DROP TABLE b"]),
    )


# =============================================================================
# Databases
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "app.sqlite"


@pytest.fixture
def sqlite_descriptor(db_path: Path) -> ConnectionDescriptor:
    return ConnectionDescriptor(engine=DatabaseEngine.SQLITE, path=str(db_path))


@pytest.fixture
def sqlite_settings(db_path: Path, ab_changelog: Path) -> DatabaseSettings:
    return DatabaseSettings(
        _env_file=None,
        db_type="sqlite",
        db_connection_uri=None,
        db_file=db_path,
        changelog_dir=ab_changelog,
    )


@pytest.fixture
def inspect_engine(db_path: Path) -> Generator[Engine, None, None]:
    """A separate engine for looking at the database from outside a run."""
    engine = create_engine(f"sqlite:///{db_path}")
    yield engine
    engine.dispose()


# =============================================================================
# Retry timing
# =============================================================================


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by retry loops; pass ``sleeps.append`` as ``sleep``."""
    return []


@pytest.fixture
def driver(ab_changelog: Path, sleeps: list[float]) -> MigrationDriver:
    return MigrationDriver(ab_changelog, sleep=sleeps.append, lock_owner="test-host (1)")


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(autouse=True)
def log_events() -> Generator[list[dict], None, None]:
    """Structlog events emitted during the test, as dicts."""
    with capture_logs() as events:
        yield events


# =============================================================================
# Process-wide state cleanup
# =============================================================================


@pytest.fixture(autouse=True)
def clean_process_state() -> Generator[None, None, None]:
    yield
    reset_default_handle()
    reset_setup()
    clear_data_migrations()
