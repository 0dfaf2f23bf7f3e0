"""One-time consolidation of changelog filenames.

Older releases recorded each changeset under the path of the individual
file it came from.  Changesets are now identified by one canonical
changelog name, so every existing ``schema_changelog`` row is rewritten
to that name before anything lists or applies changesets.  Without this,
rows recorded under a legacy filename would not count as applied and
their changesets would run a second time.
"""

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.engine import Connection

from appdb.core.logging import get_logger
from appdb.migrations.bookkeeping import CHANGELOG_TABLE, changelog_table, has_table

logger = get_logger(__name__)


def consolidate_changesets(conn: Connection, canonical_filename: str) -> int:
    """Rewrite every bookkeeping row's filename to ``canonical_filename``.

    A no-op on fresh installs (no bookkeeping table yet).  Running it again
    rewrites the same value, so it is safe on every startup.  Returns the
    number of rows touched.
    """
    if not has_table(conn, CHANGELOG_TABLE):
        logger.debug("changelog_consolidation_skipped", reason="fresh_install")
        return 0

    result = conn.execute(update(changelog_table).values(filename=canonical_filename))
    logger.debug("changelog_consolidated", rows=result.rowcount, filename=canonical_filename)
    return result.rowcount
