"""
appdb - application-database setup and schema migrations.

The public entry points are ``setup_db()`` (run the setup pipeline once
per process) and ``migrate()`` (run one migration direction out of band).
"""

__version__ = "0.3.0"

from appdb.core.setup import db_is_setup, setup_db  # noqa: E402
from appdb.migrations.driver import Direction, migrate  # noqa: E402

__all__ = [
    "Direction",
    "db_is_setup",
    "migrate",
    "setup_db",
]
