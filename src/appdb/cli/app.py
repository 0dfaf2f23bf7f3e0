"""
Root Typer application for the appdb CLI.
"""

from __future__ import annotations

from pathlib import Path

import typer
from typer import Typer

from appdb.cli.migrate import migrate
from appdb.cli.utils import console, handle_errors, load_settings, make_descriptor, output_data
from appdb.core.logging import configure_logging

app = Typer(
    name="appdb",
    help="appdb: application-database setup and schema migrations.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from appdb import __version__

        typer.echo(f"appdb {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    log_json: bool | None = typer.Option(None, "--log-json/--log-console", help="Log format"),
) -> None:
    """appdb CLI: set up and migrate the application database."""
    configure_logging(level=log_level, json_format=log_json)


# ── Commands ─────────────────────────────────────────────────────────────

app.command("migrate")(migrate)


@app.command()
def setup(
    database: str | None = typer.Option(None, "--database", "-d", help="Connection URI or SQLite path"),
    changelog_dir: Path | None = typer.Option(None, "--changelog", help="Alembic script directory"),
    no_automigrate: bool = typer.Option(False, "--no-automigrate", help="Fail instead of migrating"),
) -> None:
    """Run the full setup pipeline once (connectivity, migrations, pool, data)."""
    from appdb.core.setup import SetupOrchestrator

    with handle_errors():
        settings = load_settings(database, changelog_dir)
        if no_automigrate:
            settings = settings.model_copy(update={"db_automigrate": False})
        handle = SetupOrchestrator(settings).setup()
        handle.dispose()

    console.print(f"[green]Database ready[/green]: {handle.descriptor.describe()}")


@app.command()
def status(
    database: str | None = typer.Option(None, "--database", "-d", help="Connection URI or SQLite path"),
    changelog_dir: Path | None = typer.Option(None, "--changelog", help="Alembic script directory"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Show applied and pending changesets and held locks."""
    from appdb.migrations.driver import MigrationDriver

    with handle_errors():
        settings = load_settings(database, changelog_dir)
        snapshot = MigrationDriver(settings.changelog_dir).status(make_descriptor(settings))

    output_data(snapshot, as_json=json_out, title="Migration Status")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
