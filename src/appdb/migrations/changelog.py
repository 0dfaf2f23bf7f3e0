"""
Changelog engine - Alembic driven against a live migration connection.

Manifesto:
    The schema changelog is an ordinary Alembic script directory, but the
    question "which changesets are applied?" is answered by appdb's own
    ``schema_changelog`` table, keyed by changeset id plus the canonical
    changelog filename.  Alembic's version table is derived from it and
    re-stamped before every online run, so the two cannot disagree inside
    one migration transaction.

    Every bookkeeping INSERT/DELETE is emitted from Alembic's
    ``on_version_apply`` hook through the migration context.  Online that
    executes on the connection; offline it is rendered into the generated
    SQL.  Printed SQL run by hand and forced statements therefore record
    their changesets exactly like an online upgrade does.

Architecture:
    ::

        ChangelogEngine(conn, changelog_dir)
            │
            ├── list_changesets()  ─ ScriptDirectory, base → head
            ├── list_applied()     ─ schema_changelog rows (canonical file)
            ├── list_unrun()       ─ changesets after the applied prefix
            │
            ├── update()           ─ lock check → checksums → online upgrade
            ├── rollback_one()     ─ online downgrade of the last changeset
            ├── generate_sql()     ─ offline upgrade, literal binds
            └── statements()       ─ generated SQL split per statement

Guardrails:
    ❌ DON'T: Hand a connection that is not inside a transaction
    ✅ DO: Open the transaction first; Alembic then treats it as external
       and never commits on its own

    ❌ DON'T: Branch or merge revisions in the changelog
    ✅ DO: Keep one linear chain of ``down_revision`` links

Tags:
    migrations, alembic, changelog, bookkeeping, appdb

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import io
import os
import re
import socket
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.runtime.environment import EnvironmentContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Connection
from sqlalchemy.schema import CreateIndex, CreateTable

from appdb.core.errors import (
    AppDbError,
    ChecksumMismatchError,
    MigrationEngineError,
    MigrationLockError,
)
from appdb.core.logging import get_logger
from appdb.migrations import bookkeeping
from appdb.migrations.bookkeeping import (
    CHANGELOG_TABLE,
    EXEC_TYPE_EXECUTED,
    EXEC_TYPE_FORCED,
    LOCK_TABLE,
    VERSION_TABLE,
    ChangelogRow,
    LockRecord,
    changelog_table,
    lock_table,
)

logger = get_logger(__name__)

DEFAULT_CHANGELOG_DIR = Path(__file__).resolve().parent.parent / "changelog"
CANONICAL_CHANGELOG = "appdb/changelog"

_RUNNING_UPGRADE = re.compile(r"^-- Running upgrade\s*(?P<source>.*?)\s*->\s*(?P<target>[^\s,]+)")
_TRANSACTION_CONTROL = {"BEGIN", "BEGIN TRANSACTION", "START TRANSACTION", "COMMIT"}


@dataclass(frozen=True)
class ChangeSet:
    """One revision script of the changelog."""

    id: str
    description: str | None
    source_file: str
    parent: str | None
    checksum: str


def default_lock_owner() -> str:
    return f"{socket.gethostname()} ({os.getpid()})"


def split_statements(sql: str) -> list[tuple[str | None, str]]:
    """Split generated SQL into ``(changeset id, statement)`` pairs.

    Statements before the first ``-- Running upgrade`` marker (bookkeeping
    table creation) carry ``None``.  Comments and transaction control are
    dropped and the trailing terminator is removed.
    """
    pairs: list[tuple[str | None, str]] = []
    current: str | None = None
    pending: list[str] = []

    for block in sql.split("\n\n"):
        text = block.strip()
        if not text:
            continue
        if not pending and text.startswith("--"):
            marker = _RUNNING_UPGRADE.match(text)
            if marker:
                current = marker.group("target")
            continue
        pending.append(block)
        if not text.endswith(";"):
            continue

        statement = "\n\n".join(pending).strip().rstrip(";").strip()
        pending = []
        if statement.upper() in _TRANSACTION_CONTROL:
            continue
        pairs.append((current, statement))

    if pending:
        pairs.append((current, "\n\n".join(pending).strip()))
    return pairs


class ChangelogEngine:
    """Engine handle bound to one live connection.

    The connection must already be inside a transaction owned by the
    caller.  Mutating operations write to the target schema and to the
    bookkeeping tables; nothing here commits.  Taking and releasing the
    advisory lock in their own committed transactions is the job of
    ``appdb.migrations.locks.LockCoordinator``.
    """

    def __init__(
        self,
        conn: Connection,
        changelog_dir: str | Path | None = None,
        *,
        canonical_filename: str = CANONICAL_CHANGELOG,
        lock_owner: str | None = None,
    ) -> None:
        self.connection = conn
        self.changelog_dir = Path(changelog_dir or DEFAULT_CHANGELOG_DIR)
        self.canonical_filename = canonical_filename
        self.lock_owner = lock_owner or default_lock_owner()

        self._exec_type = EXEC_TYPE_EXECUTED
        self._order = 1
        self._recorded: list[str] = []

        with self._engine_errors("load_changelog"):
            self._config = Config()
            # ConfigParser interpolation
            self._config.set_main_option(
                "script_location", str(self.changelog_dir).replace("%", "%%")
            )
            self._script = ScriptDirectory.from_config(self._config)
            self._changesets = self._load_changesets()
        self._by_id = {cs.id: cs for cs in self._changesets}

    # ── Internals ────────────────────────────────────────────────────────

    @contextmanager
    def _engine_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except AppDbError:
            raise
        except Exception as exc:
            raise MigrationEngineError(
                f"Changelog engine failed during {operation}: {exc}", cause=exc
            ).with_context(
                engine=self.connection.dialect.name,
                operation=operation,
            ) from exc

    def _load_changesets(self) -> list[ChangeSet]:
        heads = self._script.get_heads()
        if len(heads) > 1:
            raise MigrationEngineError(
                f"Changelog {self.changelog_dir} has {len(heads)} heads; "
                "changesets must form a single ordered chain"
            )

        changesets = []
        for script in reversed(list(self._script.walk_revisions("base", "heads"))):
            if script.is_merge_point:
                raise MigrationEngineError(
                    f"Changeset {script.revision} merges several revisions; "
                    "changesets must form a single ordered chain"
                )
            source = Path(script.path).read_text(encoding="utf-8")
            changesets.append(
                ChangeSet(
                    id=script.revision,
                    description=script.doc,
                    source_file=script.path,
                    parent=script.down_revision,
                    checksum=bookkeeping.checksum(source),
                )
            )
        return changesets

    def _applied_prefix(self) -> list[ChangeSet]:
        applied = {row.id for row in self.list_applied()}
        prefix: list[ChangeSet] = []
        for changeset in self._changesets:
            if changeset.id not in applied:
                break
            prefix.append(changeset)

        later = [cs.id for cs in self._changesets[len(prefix):] if cs.id in applied]
        if later:
            missing = self._changesets[len(prefix)].id
            raise MigrationEngineError(
                f"Changeset {missing} is not applied but later changesets are: "
                f"{', '.join(later)}",
                retryable=False,
            )

        unknown = applied - set(self._by_id)
        if unknown:
            logger.warning("unknown_changesets_recorded", changesets=sorted(unknown))
        return prefix

    def _on_version_apply(self, *, ctx: Any, step: Any, heads: Any, run_args: Any) -> None:
        if step.is_stamp:
            return
        changeset_id = step.up_revision_id
        if step.is_upgrade:
            changeset = self._by_id[changeset_id]
            ctx.execute(
                bookkeeping.insert_row(
                    id=changeset.id,
                    filename=self.canonical_filename,
                    description=changeset.description,
                    checksum=changeset.checksum,
                    exec_type=self._exec_type,
                    order_executed=self._order,
                )
            )
            self._order += 1
        else:
            ctx.execute(bookkeeping.delete_row(id=changeset_id, filename=self.canonical_filename))
        self._recorded.append(changeset_id)
        logger.info(
            "changeset_applied" if step.is_upgrade else "changeset_rolled_back",
            changeset=changeset_id,
        )

    def _upgrade_fn(self, rev: Any, context: Any) -> Any:
        return self._script._upgrade_revs("heads", rev)

    def _run(
        self,
        fn: Callable[[Any, Any], Any],
        *,
        exec_type: str,
        as_sql: bool = False,
        starting_rev: str | None = None,
        before: Callable[[EnvironmentContext], None] | None = None,
    ) -> str:
        """Run Alembic once, online or offline.  Returns the rendered SQL."""
        self._exec_type = exec_type
        self._order = bookkeeping.next_order(self.connection)
        self._recorded = []
        buffer = io.StringIO()

        with EnvironmentContext(
            self._config,
            self._script,
            fn=fn,
            as_sql=as_sql,
            starting_rev=starting_rev,
            destination_rev="heads",
        ) as env:
            if as_sql:
                env.configure(
                    dialect_name=self.connection.dialect.name,
                    output_buffer=buffer,
                    literal_binds=True,
                    version_table=VERSION_TABLE,
                    on_version_apply=self._on_version_apply,
                )
            else:
                env.configure(
                    connection=self.connection,
                    version_table=VERSION_TABLE,
                    on_version_apply=self._on_version_apply,
                )
            if before is not None:
                before(env)
            with env.begin_transaction():
                env.run_migrations()

        return buffer.getvalue()

    # ── Listing ──────────────────────────────────────────────────────────

    def list_changesets(self) -> list[ChangeSet]:
        """All changesets in changelog order (base first)."""
        return list(self._changesets)

    def list_applied(self) -> list[ChangelogRow]:
        with self._engine_errors("list_applied"):
            return bookkeeping.list_rows(self.connection, self.canonical_filename)

    def list_unrun(self) -> list[ChangeSet]:
        with self._engine_errors("list_unrun"):
            prefix = self._applied_prefix()
        return self._changesets[len(prefix):]

    def has_unrun(self) -> bool:
        return bool(self.list_unrun())

    def last_applied(self) -> ChangeSet | None:
        with self._engine_errors("last_applied"):
            prefix = self._applied_prefix()
        return prefix[-1] if prefix else None

    # ── Locks ────────────────────────────────────────────────────────────

    def list_locks(self) -> list[LockRecord]:
        with self._engine_errors("list_locks"):
            return bookkeeping.list_locks(self.connection)

    def acquire_lock(self) -> None:
        """Take the advisory lock row, or raise ``MigrationLockError``."""
        with self._engine_errors("acquire_lock"):
            bookkeeping.ensure_tables(self.connection)
            if not bookkeeping.try_lock(self.connection, self.lock_owner):
                holders = [lock.locked_by for lock in bookkeeping.list_locks(self.connection)]
                raise MigrationLockError(
                    f"Could not acquire migration lock; held by {', '.join(map(str, holders))}"
                )
        logger.debug("migration_lock_acquired", owner=self.lock_owner)

    def release_lock(self) -> None:
        with self._engine_errors("release_lock"):
            bookkeeping.unlock(self.connection, owner=self.lock_owner)
        logger.debug("migration_lock_released", owner=self.lock_owner)

    def check_lock(self) -> None:
        """Raise ``MigrationLockError`` when another owner holds the lock."""
        with self._engine_errors("check_lock"):
            holders = [
                lock.locked_by
                for lock in bookkeeping.list_locks(self.connection)
                if lock.locked_by != self.lock_owner
            ]
        if holders:
            raise MigrationLockError(f"Migration lock is held by {', '.join(map(str, holders))}")

    def force_release_locks(self) -> int:
        """Clear every lock row regardless of owner.  Returns how many were held."""
        with self._engine_errors("force_release_locks"):
            if not bookkeeping.has_table(self.connection, LOCK_TABLE):
                return 0
            return bookkeeping.unlock(self.connection)

    # ── Checksums ────────────────────────────────────────────────────────

    def clear_checksums(self) -> int:
        with self._engine_errors("clear_checksums"):
            return bookkeeping.clear_checksums(self.connection)

    def validate_checksums(self) -> None:
        """Fill in missing checksums and reject changesets edited after apply."""
        with self._engine_errors("validate_checksums"):
            for row in self.list_applied():
                changeset = self._by_id.get(row.id)
                if changeset is None:
                    continue
                if row.checksum is None:
                    bookkeeping.set_checksum(
                        self.connection,
                        id=row.id,
                        filename=row.filename,
                        value=changeset.checksum,
                    )
                elif row.checksum != changeset.checksum:
                    raise ChecksumMismatchError(row.id, row.checksum, changeset.checksum)

    # ── Version pointer ──────────────────────────────────────────────────

    def stamp_version(self) -> str | None:
        """Re-stamp Alembic's version table from the applied prefix."""
        with self._engine_errors("stamp_version"):
            prefix = self._applied_prefix()
            revision = prefix[-1].id if prefix else None
            bookkeeping.stamp_version(self.connection, revision)
        return revision

    # ── Mutations ────────────────────────────────────────────────────────

    def update(self) -> list[str]:
        """Apply every unrun changeset in order.  Returns the applied ids.

        The caller holds the advisory lock; nothing runs while another owner
        holds it.
        """
        if not self.has_unrun():
            return []

        self.check_lock()
        with self._engine_errors("update"):
            self.validate_checksums()
            self.stamp_version()
            self._run(self._upgrade_fn, exec_type=EXEC_TYPE_EXECUTED)
            applied = list(self._recorded)
        return applied

    def rollback_one(self) -> str | None:
        """Roll back the most recently applied changeset.  Returns its id."""
        target = self.last_applied()
        if target is None:
            logger.info("nothing_to_roll_back")
            return None

        self.check_lock()
        with self._engine_errors("rollback_one"):
            self.stamp_version()
            destination = target.parent or "base"
            self._run(
                lambda rev, context: self._script._downgrade_revs(destination, rev),
                exec_type=EXEC_TYPE_EXECUTED,
            )
        return target.id

    # ── Offline SQL ──────────────────────────────────────────────────────

    def _create_missing_tables(self, env: EnvironmentContext) -> None:
        for table in (changelog_table, lock_table):
            if bookkeeping.has_table(self.connection, table.name):
                continue
            env.execute(CreateTable(table))
            for index in table.indexes:
                env.execute(CreateIndex(index))

    def generate_sql(self, exec_type: str = EXEC_TYPE_EXECUTED) -> str:
        """Render the SQL for every unrun changeset without applying it.

        Includes creation of missing bookkeeping tables and the bookkeeping
        rows themselves.  Empty when nothing is unrun.
        """
        unrun = self.list_unrun()
        if not unrun:
            return ""

        with self._engine_errors("generate_sql"):
            return self._run(
                self._upgrade_fn,
                exec_type=exec_type,
                as_sql=True,
                starting_rev=unrun[0].parent,
                before=self._create_missing_tables,
            )

    def statements(self, exec_type: str = EXEC_TYPE_FORCED) -> list[tuple[str | None, str]]:
        """Unrun changesets as individually executable statements."""
        return split_statements(self.generate_sql(exec_type))


__all__ = [
    "CANONICAL_CHANGELOG",
    "CHANGELOG_TABLE",
    "DEFAULT_CHANGELOG_DIR",
    "ChangeSet",
    "ChangelogEngine",
    "default_lock_owner",
    "split_statements",
]
