"""Tests for the bookkeeping tables."""

import pytest
from sqlalchemy import create_engine, select

from appdb.migrations import bookkeeping
from appdb.migrations.bookkeeping import (
    EXEC_TYPE_EXECUTED,
    changelog_table,
    checksum,
    version_table,
)


@pytest.fixture
def engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    yield engine
    engine.dispose()


class TestChecksum:
    def test_is_sha256_hex(self):
        assert len(checksum("CREATE TABLE a (id INTEGER)")) == 64

    def test_ignores_line_endings_and_trailing_whitespace(self):
        assert checksum("a = 1\r\nb = 2  \n") == checksum("a = 1\nb = 2")

    def test_detects_edits(self):
        assert checksum("a = 1") != checksum("a = 2")


class TestChangelogRows:
    def test_missing_table_lists_nothing(self, engine):
        with engine.connect() as conn:
            assert bookkeeping.list_rows(conn) == []
            assert bookkeeping.next_order(conn) == 1
            assert bookkeeping.clear_checksums(conn) == 0

    def test_insert_and_delete(self, engine):
        with engine.begin() as conn:
            bookkeeping.ensure_tables(conn)
            conn.execute(
                bookkeeping.insert_row(
                    id="rev_a",
                    filename="appdb/changelog",
                    description="create   a\n table",
                    checksum="abc",
                    exec_type=EXEC_TYPE_EXECUTED,
                    order_executed=1,
                )
            )
            rows = bookkeeping.list_rows(conn, "appdb/changelog")
            assert [(r.id, r.description, r.order_executed) for r in rows] == [
                ("rev_a", "create a table", 1)
            ]
            assert rows[0].applied_at is not None
            assert bookkeeping.next_order(conn) == 2
            assert bookkeeping.list_rows(conn, "other") == []

            conn.execute(bookkeeping.delete_row(id="rev_a", filename="appdb/changelog"))
            assert bookkeeping.list_rows(conn) == []

    def test_clear_and_set_checksum(self, engine):
        with engine.begin() as conn:
            bookkeeping.ensure_tables(conn)
            conn.execute(
                bookkeeping.insert_row(
                    id="rev_a",
                    filename="f",
                    description=None,
                    checksum="abc",
                    exec_type=EXEC_TYPE_EXECUTED,
                    order_executed=1,
                )
            )
            assert bookkeeping.clear_checksums(conn) == 1
            assert conn.execute(select(changelog_table.c.checksum)).scalar() is None
            bookkeeping.set_checksum(conn, id="rev_a", filename="f", value="def")
            assert conn.execute(select(changelog_table.c.checksum)).scalar() == "def"


class TestLockRow:
    def test_lock_cycle(self, engine):
        with engine.begin() as conn:
            bookkeeping.ensure_tables(conn)
            assert bookkeeping.list_locks(conn) == []

            assert bookkeeping.try_lock(conn, "web-1 (10)") is True
            assert bookkeeping.try_lock(conn, "web-2 (20)") is False
            locks = bookkeeping.list_locks(conn)
            assert [lock.locked_by for lock in locks] == ["web-1 (10)"]
            assert locks[0].lock_granted is not None

            assert bookkeeping.unlock(conn) == 1
            assert bookkeeping.list_locks(conn) == []
            assert bookkeeping.unlock(conn) == 0

    def test_unlock_by_owner(self, engine):
        with engine.begin() as conn:
            bookkeeping.ensure_tables(conn)
            bookkeeping.try_lock(conn, "web-1 (10)")

            assert bookkeeping.unlock(conn, owner="web-2 (20)") == 0
            assert [lock.locked_by for lock in bookkeeping.list_locks(conn)] == ["web-1 (10)"]
            assert bookkeeping.unlock(conn, owner="web-1 (10)") == 1
            assert bookkeeping.list_locks(conn) == []

    def test_missing_lock_table(self, engine):
        with engine.connect() as conn:
            assert bookkeeping.list_locks(conn) == []


class TestStampVersion:
    def test_stamp_and_restamp(self, engine):
        with engine.begin() as conn:
            bookkeeping.stamp_version(conn, "rev_a")
            bookkeeping.stamp_version(conn, "rev_b")
            assert conn.execute(select(version_table.c.version_num)).scalars().all() == ["rev_b"]

    def test_stamp_base_drops_table(self, engine):
        with engine.begin() as conn:
            bookkeeping.stamp_version(conn, "rev_a")
            bookkeeping.stamp_version(conn, None)
            assert not bookkeeping.has_table(conn, bookkeeping.VERSION_TABLE)
            bookkeeping.stamp_version(conn, None)
