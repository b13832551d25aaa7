"""Helpers shared by the CLI command modules."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from gemini_odb.db.database import Database

console = Console()

UrlOption = Annotated[
    Optional[str],
    typer.Option("--url", help="Database URL (default: GEMINI_ODB_DATABASE_URL)"),
]


def open_database(db_url: str | None) -> Database:
    """Open the database named by ``--url`` or the environment settings."""
    from gemini_odb.config import OdbSettings
    from gemini_odb.db import create_database

    settings = OdbSettings.from_env()
    return create_database(db_url or settings.database_url, echo=settings.echo)


def fail(message: str) -> typer.Exit:
    """Print an error and return the exit to raise."""
    console.print(f"[bold red]Error:[/bold red] {message}")
    return typer.Exit(code=1)
