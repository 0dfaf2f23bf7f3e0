"""Bookkeeping tables owned by the changelog engine.

``schema_changelog``
    One row per applied changeset: id, canonical changelog filename,
    description, checksum, how it was executed, its position in execution
    order and when it was applied.  Authoritative for "is this changeset
    applied?".

``schema_changelog_lock``
    A single advisory lock row (``id = 1``).  Cooperative only: nothing in
    the database stops two instances from ignoring it.

``alembic_version``
    Alembic's own version pointer.  Derived from ``schema_changelog`` and
    re-stamped before every online run.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    func,
    inspect,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection
from sqlalchemy.sql.dml import Delete, Insert

CHANGELOG_TABLE = "schema_changelog"
LOCK_TABLE = "schema_changelog_lock"
VERSION_TABLE = "alembic_version"
LOCK_ROW_ID = 1

EXEC_TYPE_EXECUTED = "EXECUTED"
EXEC_TYPE_FORCED = "FORCED"

metadata = MetaData()

changelog_table = Table(
    CHANGELOG_TABLE,
    metadata,
    Column("id", String(255), nullable=False),
    Column("filename", String(255), nullable=False),
    Column("description", String(255)),
    Column("checksum", String(64)),
    Column("exec_type", String(10), nullable=False),
    Column("order_executed", Integer, nullable=False),
    Column("applied_at", DateTime(timezone=True), nullable=False),
)

Index("ix_schema_changelog_id_filename", changelog_table.c.id, changelog_table.c.filename)

lock_table = Table(
    LOCK_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("locked", Boolean, nullable=False, default=False),
    Column("lock_granted", DateTime(timezone=True)),
    Column("locked_by", String(255)),
)

# Separate metadata: managed only by ``stamp_version``
version_table = Table(
    VERSION_TABLE,
    MetaData(),
    Column("version_num", String(32), primary_key=True),
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def checksum(source: str) -> str:
    """SHA-256 of a changeset script with normalized line endings."""
    normalized = "\n".join(line.rstrip() for line in source.splitlines()).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ChangelogRow:
    """One row of ``schema_changelog``."""

    id: str
    filename: str
    description: str | None
    checksum: str | None
    exec_type: str
    order_executed: int
    applied_at: datetime | str


@dataclass(frozen=True)
class LockRecord:
    """A held advisory lock."""

    id: int
    lock_granted: datetime | str | None
    locked_by: str | None


# ── Table lifecycle ──────────────────────────────────────────────────────


def has_table(conn: Connection, name: str) -> bool:
    return inspect(conn).has_table(name)


def ensure_tables(conn: Connection) -> None:
    """Create the bookkeeping and lock tables if missing."""
    metadata.create_all(conn, checkfirst=True)


# ── Changelog rows ───────────────────────────────────────────────────────


def list_rows(conn: Connection, filename: str | None = None) -> list[ChangelogRow]:
    """Rows in execution order, optionally restricted to one changelog filename."""
    if not has_table(conn, CHANGELOG_TABLE):
        return []
    stmt = select(changelog_table).order_by(changelog_table.c.order_executed)
    if filename is not None:
        stmt = stmt.where(changelog_table.c.filename == filename)
    return [ChangelogRow(**row._mapping) for row in conn.execute(stmt)]


def next_order(conn: Connection) -> int:
    if not has_table(conn, CHANGELOG_TABLE):
        return 1
    current = conn.execute(select(func.max(changelog_table.c.order_executed))).scalar()
    return (current or 0) + 1


def insert_row(
    *,
    id: str,
    filename: str,
    description: str | None,
    checksum: str | None,
    exec_type: str,
    order_executed: int,
) -> Insert:
    """INSERT for one applied changeset.

    ``applied_at`` is a SQL expression so the statement renders with
    literal binds when SQL is generated offline.
    """
    description = " ".join((description or "").split())[:255] or None
    return insert(changelog_table).values(
        id=id,
        filename=filename,
        description=description,
        checksum=checksum,
        exec_type=exec_type,
        order_executed=order_executed,
        applied_at=func.current_timestamp(),
    )


def delete_row(*, id: str, filename: str) -> Delete:
    return delete(changelog_table).where(
        changelog_table.c.id == id,
        changelog_table.c.filename == filename,
    )


def set_checksum(conn: Connection, *, id: str, filename: str, value: str | None) -> None:
    conn.execute(
        update(changelog_table)
        .where(changelog_table.c.id == id, changelog_table.c.filename == filename)
        .values(checksum=value)
    )


def clear_checksums(conn: Connection) -> int:
    if not has_table(conn, CHANGELOG_TABLE):
        return 0
    return conn.execute(update(changelog_table).values(checksum=None)).rowcount


# ── Lock row ─────────────────────────────────────────────────────────────


def list_locks(conn: Connection) -> list[LockRecord]:
    if not has_table(conn, LOCK_TABLE):
        return []
    stmt = select(lock_table).where(lock_table.c.locked.is_(True))
    return [
        LockRecord(id=row.id, lock_granted=row.lock_granted, locked_by=row.locked_by)
        for row in conn.execute(stmt)
    ]


def try_lock(conn: Connection, owner: str) -> bool:
    """Set the lock row if it is free.  Returns ``False`` when already held."""
    exists = conn.execute(
        select(lock_table.c.id).where(lock_table.c.id == LOCK_ROW_ID)
    ).first()
    if exists is None:
        conn.execute(insert(lock_table).values(id=LOCK_ROW_ID, locked=False))
    result = conn.execute(
        update(lock_table)
        .where(lock_table.c.id == LOCK_ROW_ID, lock_table.c.locked.is_(False))
        .values(locked=True, lock_granted=utcnow(), locked_by=owner)
    )
    return result.rowcount == 1


def unlock(conn: Connection, owner: str | None = None) -> int:
    """Clear held lock rows, only those of ``owner`` when given.  Returns how many."""
    stmt = update(lock_table).where(lock_table.c.locked.is_(True))
    if owner is not None:
        stmt = stmt.where(lock_table.c.locked_by == owner)
    result = conn.execute(stmt.values(locked=False, lock_granted=None, locked_by=None))
    return result.rowcount


# ── Version pointer ──────────────────────────────────────────────────────


def stamp_version(conn: Connection, revision: str | None) -> None:
    """Point Alembic's version table at ``revision``.

    At base (``None``) the table is dropped: Alembic creates it again on
    the first upgrade, both online and in generated SQL.
    """
    if revision is None:
        version_table.drop(conn, checkfirst=True)
        return
    version_table.create(conn, checkfirst=True)
    conn.execute(delete(version_table))
    conn.execute(insert(version_table).values(version_num=revision))
