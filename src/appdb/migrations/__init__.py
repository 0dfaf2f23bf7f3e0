"""Schema migrations for the application database.

Manifesto:
    Instances of the application start concurrently during deployments and
    all of them want the schema current before serving.  Changesets are
    applied in one total order, inside one transaction per run, behind an
    advisory lock, with explicit recovery paths when that lock or the
    bookkeeping goes stale.

Modules
-------
bookkeeping     schema_changelog / lock / version tables
changelog       ChangelogEngine (Alembic script directory + bookkeeping)
consolidation   One-time rewrite of legacy changelog filenames
locks           LockCoordinator (take, wait for, force-clear the lock)
driver          MigrationDriver, Direction, migrate()
data            Data migrations run after the schema is current

Tags:
    appdb, migrations, schema, alembic, locks

Doc-Types:
    package-overview
"""

from appdb.migrations.changelog import ChangelogEngine, ChangeSet
from appdb.migrations.driver import Direction, MigrationDriver, MigrationResult, migrate
from appdb.migrations.locks import LockCoordinator

__all__ = [
    "ChangeSet",
    "ChangelogEngine",
    "Direction",
    "LockCoordinator",
    "MigrationDriver",
    "MigrationResult",
    "migrate",
]
