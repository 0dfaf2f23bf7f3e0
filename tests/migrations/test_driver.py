"""Tests for the migration driver, end to end against SQLite files."""

import sqlite3
from functools import partial

import pytest
from sqlalchemy import inspect

from appdb.core.errors import (
    ChecksumMismatchError,
    LockTimeoutError,
    MigrationEngineError,
    MigrationLockError,
)
from appdb.migrations.changelog import ChangelogEngine
from appdb.migrations.driver import Direction, MigrationDriver, MigrationResult
from tests._support.changelogs import Rev, changelog_rows, held_locks, hold_lock, table_names

CANONICAL = "appdb/changelog"


@pytest.fixture
def make_driver(sleeps):
    return partial(MigrationDriver, sleep=sleeps.append, lock_owner="test-host (1)")


class TestDirection:
    @pytest.mark.parametrize("value", ["up", "force", "down-one", "print", "release-locks"])
    def test_parses_cli_names(self, value):
        assert Direction(value).value == value

    def test_unknown_direction(self, driver, sqlite_descriptor):
        with pytest.raises(ValueError):
            driver.migrate(sqlite_descriptor, "sideways")

    def test_only_print_is_read_only(self):
        assert [d for d in Direction if not d.is_mutating] == [Direction.PRINT]


class TestUp:
    def test_applies_all_changesets(self, driver, sqlite_descriptor, inspect_engine, sleeps):
        result = driver.migrate(sqlite_descriptor, Direction.UP)

        assert result.applied == ["rev_a", "rev_b"]
        assert result.success is True
        assert result.elapsed_ms >= 0
        assert {"a", "b", "schema_changelog", "schema_changelog_lock"} <= table_names(inspect_engine)
        assert changelog_rows(inspect_engine) == [
            ("rev_a", CANONICAL, "EXECUTED"),
            ("rev_b", CANONICAL, "EXECUTED"),
        ]
        assert held_locks(inspect_engine) == []
        assert sleeps == []

    def test_second_run_is_noop(self, driver, sqlite_descriptor, inspect_engine):
        driver.migrate(sqlite_descriptor, Direction.UP)
        rows = changelog_rows(inspect_engine)

        assert driver.migrate(sqlite_descriptor, "up").applied == []
        assert changelog_rows(inspect_engine) == rows

    def test_nothing_unrun_ignores_held_lock(self, driver, sqlite_descriptor, inspect_engine, sleeps):
        driver.migrate(sqlite_descriptor, Direction.UP)
        hold_lock(inspect_engine)

        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == []
        assert sleeps == []

    def test_held_lock_times_out(
        self, driver, sqlite_descriptor, inspect_engine, sleeps, log_events
    ):
        hold_lock(inspect_engine, "web-2 (311)")

        with pytest.raises(LockTimeoutError) as exc_info:
            driver.migrate(sqlite_descriptor, Direction.UP)

        assert exc_info.value.attempts == 5
        assert "web-2 (311)" in exc_info.value.message
        assert sleeps == [2.0, 2.0, 2.0, 2.0]
        assert changelog_rows(inspect_engine) == []
        assert "a" not in table_names(inspect_engine)
        # Left for its holder
        assert held_locks(inspect_engine) == ["web-2 (311)"]
        waits = [e for e in log_events if e["event"] == "migration_lock_held"]
        assert [e["attempt"] for e in waits] == [1, 2, 3, 4]
        assert any(e["event"] == "migration_lock_timeout" for e in log_events)

    def test_lock_is_visible_to_other_instances_while_applying(
        self, driver, sqlite_descriptor, inspect_engine, monkeypatch
    ):
        seen = []
        update = ChangelogEngine.update

        def watched_update(changelog):
            seen.append(held_locks(inspect_engine))
            return update(changelog)

        monkeypatch.setattr(ChangelogEngine, "update", watched_update)

        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == ["rev_a", "rev_b"]
        assert seen == [["test-host (1)"]]
        assert held_locks(inspect_engine) == []

    def test_failed_batch_rolls_back_everything(
        self, make_changelog, make_driver, sqlite_descriptor, inspect_engine
    ):
        changelog = make_changelog(
            Rev("rev_a", ["CREATE TABLE a (id INTEGER PRIMARY KEY)"]),
            Rev("rev_b", ["INSERT INTO no_such_table VALUES (1)"]),
        )

        with pytest.raises(MigrationEngineError, match="no_such_table"):
            make_driver(changelog).migrate(sqlite_descriptor, Direction.UP)

        assert "a" not in table_names(inspect_engine)
        assert changelog_rows(inspect_engine) == []
        assert held_locks(inspect_engine) == []

    def test_new_changeset_after_release(
        self, make_changelog, make_driver, sqlite_descriptor, inspect_engine
    ):
        changelog = make_changelog(Rev("rev_a", ["CREATE TABLE a (id INTEGER PRIMARY KEY)"]))
        make_driver(changelog).migrate(sqlite_descriptor, Direction.UP)

        make_changelog(Rev("rev_b", ["CREATE TABLE b (id INTEGER PRIMARY KEY)"]), parent="rev_a")
        result = make_driver(changelog).migrate(sqlite_descriptor, Direction.UP)

        assert result.applied == ["rev_b"]
        assert [row[0] for row in changelog_rows(inspect_engine)] == ["rev_a", "rev_b"]


class TestPrint:
    def test_prints_without_applying(self, driver, sqlite_descriptor, inspect_engine):
        result = driver.migrate(sqlite_descriptor, Direction.PRINT)

        assert result.pending == ["rev_a", "rev_b"]
        assert "CREATE TABLE a (id INTEGER PRIMARY KEY);" in result.sql
        assert result.applied == []
        assert "a" not in table_names(inspect_engine)
        assert changelog_rows(inspect_engine) == []

    def test_current_schema_prints_nothing(self, driver, sqlite_descriptor):
        driver.migrate(sqlite_descriptor, Direction.UP)
        result = driver.migrate(sqlite_descriptor, Direction.PRINT)
        assert result.sql == ""
        assert result.pending == []

    def test_running_printed_sql_by_hand_counts_as_applied(
        self, driver, sqlite_descriptor, db_path, inspect_engine
    ):
        sql = driver.migrate(sqlite_descriptor, Direction.PRINT).sql

        raw = sqlite3.connect(db_path)
        try:
            raw.executescript(sql)
        finally:
            raw.close()

        assert [row[0] for row in changelog_rows(inspect_engine)] == ["rev_a", "rev_b"]
        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == []


class TestForce:
    def test_failing_statement_is_isolated(
        self, make_changelog, make_driver, sqlite_descriptor, inspect_engine
    ):
        changelog = make_changelog(
            Rev("rev_a", ["CREATE TABLE a (id INTEGER PRIMARY KEY)"]),
            Rev(
                "rev_b",
                ["INSERT INTO no_such_table VALUES (1)", "CREATE TABLE b (id INTEGER PRIMARY KEY)"],
            ),
        )

        result = make_driver(changelog).migrate(sqlite_descriptor, Direction.FORCE)

        assert result.success is False
        assert list(result.failed_statements) == ["INSERT INTO no_such_table VALUES (1)"]
        assert "no_such_table" in result.failed_statements["INSERT INTO no_such_table VALUES (1)"]
        assert result.applied == ["rev_a", "rev_b"]
        assert {"a", "b"} <= table_names(inspect_engine)
        assert changelog_rows(inspect_engine) == [
            ("rev_a", CANONICAL, "FORCED"),
            ("rev_b", CANONICAL, "FORCED"),
        ]
        assert held_locks(inspect_engine) == []

    def test_stale_lock_is_taken_over(
        self, driver, sqlite_descriptor, inspect_engine, log_events
    ):
        hold_lock(inspect_engine, "dead (9)")

        result = driver.migrate(sqlite_descriptor, Direction.FORCE)

        assert result.applied == ["rev_a", "rev_b"]
        assert result.success is True
        assert changelog_rows(inspect_engine) == [
            ("rev_a", CANONICAL, "FORCED"),
            ("rev_b", CANONICAL, "FORCED"),
        ]
        assert held_locks(inspect_engine) == []
        stolen = [e for e in log_events if e["event"] == "migration_lock_stolen"]
        assert stolen[0]["locked_by"] == ["dead (9)"]

    def test_nothing_unrun(self, driver, sqlite_descriptor):
        driver.migrate(sqlite_descriptor, Direction.UP)
        result = driver.migrate(sqlite_descriptor, Direction.FORCE)
        assert result.applied == []
        assert result.success is True

    def test_recovers_from_checksum_mismatch(
        self, ab_changelog, make_driver, sqlite_descriptor, inspect_engine
    ):
        driver = make_driver(ab_changelog)
        driver.migrate(sqlite_descriptor, Direction.UP)
        driver.migrate(sqlite_descriptor, Direction.DOWN_ONE)

        script = ab_changelog / "versions" / "rev_a.py"
        script.write_text(script.read_text() + "\n# reviewed\n", encoding="utf-8")

        with pytest.raises(ChecksumMismatchError, match="rev_a"):
            driver.migrate(sqlite_descriptor, Direction.UP)
        assert held_locks(inspect_engine) == []

        result = driver.migrate(sqlite_descriptor, Direction.FORCE)
        assert result.applied == ["rev_b"]
        assert changelog_rows(inspect_engine) == [
            ("rev_a", CANONICAL, "EXECUTED"),
            ("rev_b", CANONICAL, "FORCED"),
        ]
        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == []


class TestDownOne:
    def test_rolls_back_then_reapplies(self, driver, sqlite_descriptor, inspect_engine):
        driver.migrate(sqlite_descriptor, Direction.UP)

        result = driver.migrate(sqlite_descriptor, Direction.DOWN_ONE)
        assert result.rolled_back == "rev_b"
        assert "b" not in table_names(inspect_engine)
        assert [row[0] for row in changelog_rows(inspect_engine)] == ["rev_a"]

        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == ["rev_b"]
        assert "b" in table_names(inspect_engine)

    def test_empty_database(self, driver, sqlite_descriptor):
        assert driver.migrate(sqlite_descriptor, Direction.DOWN_ONE).rolled_back is None

    def test_held_lock_blocks_rollback(self, driver, sqlite_descriptor, inspect_engine):
        driver.migrate(sqlite_descriptor, Direction.UP)
        hold_lock(inspect_engine, "web-2 (311)")

        with pytest.raises(MigrationLockError, match="web-2"):
            driver.migrate(sqlite_descriptor, Direction.DOWN_ONE)

        assert "b" in table_names(inspect_engine)
        assert held_locks(inspect_engine) == ["web-2 (311)"]


class TestReleaseLocks:
    def test_clears_stale_lock(self, driver, sqlite_descriptor, inspect_engine):
        hold_lock(inspect_engine)

        result = driver.migrate(sqlite_descriptor, Direction.RELEASE_LOCKS)

        assert result.locks_released == 1
        assert held_locks(inspect_engine) == []
        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == ["rev_a", "rev_b"]

    def test_fresh_database(self, driver, sqlite_descriptor):
        assert driver.migrate(sqlite_descriptor, Direction.RELEASE_LOCKS).locks_released == 0


class TestStatus:
    def test_snapshot(self, driver, sqlite_descriptor, inspect_engine):
        status = driver.status(sqlite_descriptor)
        assert (status.applied, status.pending, status.locked_by) == ([], ["rev_a", "rev_b"], [])

        driver.migrate(sqlite_descriptor, Direction.UP)
        driver.migrate(sqlite_descriptor, Direction.DOWN_ONE)
        hold_lock(inspect_engine, "web-2 (311)")

        status = driver.status(sqlite_descriptor)
        assert status.applied == ["rev_a"]
        assert status.pending == ["rev_b"]
        assert status.locked_by == ["web-2 (311)"]


class TestConsolidationOnRun:
    def test_legacy_filenames_count_as_applied(self, driver, sqlite_descriptor, inspect_engine):
        driver.migrate(sqlite_descriptor, Direction.UP)
        with inspect_engine.begin() as conn:
            conn.exec_driver_sql("UPDATE schema_changelog SET filename = 'migrations/changelog.xml'")

        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == []
        assert {row[1] for row in changelog_rows(inspect_engine)} == {CANONICAL}


class TestBundledChangelog:
    def test_applies_and_rolls_back(self, sqlite_descriptor, inspect_engine, sleeps):
        driver = MigrationDriver(sleep=sleeps.append)

        assert driver.migrate(sqlite_descriptor, Direction.UP).applied == ["0001", "0002"]
        columns = {c["name"] for c in inspect(inspect_engine).get_columns("app_settings")}
        assert {"key", "value", "updated_at", "description"} <= columns

        assert driver.migrate(sqlite_descriptor, Direction.DOWN_ONE).rolled_back == "0002"
        columns = {c["name"] for c in inspect(inspect_engine).get_columns("app_settings")}
        assert "description" not in columns


def test_result_defaults():
    result = MigrationResult(direction=Direction.UP)
    assert result.success is True
    assert result.failed_statements == {}
