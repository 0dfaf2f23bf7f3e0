"""
CLI utility helpers - settings, descriptors, error handling and output.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from appdb.core.connection import ConnectionDescriptor, descriptor_from_settings
from appdb.core.errors import AppDbError
from appdb.core.settings import DatabaseSettings

console = Console()
err_console = Console(stderr=True)


# ── Settings helpers ─────────────────────────────────────────────────────


def load_settings(
    database: str | None = None,
    changelog_dir: Path | None = None,
) -> DatabaseSettings:
    """Environment settings, with CLI overrides applied.

    ``database`` is a connection URI, or a SQLite file path when it has no
    scheme.
    """
    overrides: dict[str, Any] = {}
    if database:
        if "://" in database:
            overrides["db_connection_uri"] = database
        else:
            overrides["db_type"] = "sqlite"
            overrides["db_connection_uri"] = None
            overrides["db_file"] = Path(database)
    if changelog_dir is not None:
        overrides["changelog_dir"] = changelog_dir
    return DatabaseSettings(**overrides)


def make_descriptor(settings: DatabaseSettings) -> ConnectionDescriptor:
    return descriptor_from_settings(settings)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn ``AppDbError`` into a red error line and exit code 1."""
    try:
        yield
    except AppDbError as e:
        err_console.print(f"[bold red]Error[/bold red] ({type(e).__name__}): {escape(e.message)}")
        raise typer.Exit(code=1) from e


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / dict to plain dict."""
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_data(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a dataclass or dict as JSON or a two-column table."""
    payload = _to_dict(data)
    if as_json:
        console.print_json(json.dumps(payload, default=str))
        return

    table = Table(title=title or None, show_header=False, pad_edge=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", overflow="fold")
    for key, value in payload.items():
        if key == "sql":
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, list | tuple):
            value = ", ".join(map(str, value)) or "-"
        elif isinstance(value, dict):
            value = "\n".join(f"{k}: {v}" for k, v in value.items()) or "-"
        elif value is None or value == "":
            value = "-"
        table.add_row(key, str(value))
    console.print(table)
