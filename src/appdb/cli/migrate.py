"""
CLI: ``appdb migrate <direction>`` - run one migration direction.
"""

from __future__ import annotations

from pathlib import Path

import typer

from appdb.cli.utils import console, err_console, handle_errors, load_settings, make_descriptor, output_data
from appdb.migrations.driver import Direction, MigrationDriver


def migrate(
    direction: Direction = typer.Argument(..., help="up | force | down-one | print | release-locks"),
    database: str | None = typer.Option(None, "--database", "-d", help="Connection URI or SQLite path"),
    changelog_dir: Path | None = typer.Option(None, "--changelog", help="Alembic script directory"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Run one migration direction against the application database."""
    with handle_errors():
        settings = load_settings(database, changelog_dir)
        result = MigrationDriver(settings.changelog_dir).migrate(make_descriptor(settings), direction)

    if direction is Direction.PRINT and not json_out:
        if result.sql:
            console.print(result.sql, markup=False, highlight=False)
        else:
            console.print("[dim]No pending changesets.[/dim]")
        return

    output_data(result, as_json=json_out, title=f"Migrate {direction.value}")
    if not result.success:
        err_console.print(
            f"[yellow]{len(result.failed_statements)} statement(s) failed and were skipped[/yellow]"
        )
