"""Database management commands."""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.table import Table

from gemini_odb.cli.common import UrlOption, console, open_database

db_app = typer.Typer(
    name="db",
    help="Database management operations",
    no_args_is_help=True,
)


@db_app.command(name="init")
def init_database(db_url: UrlOption = None) -> None:
    """
    Initialize database schema (idempotent).

    Creates all tables that do not exist yet.
    """
    from sqlalchemy import inspect

    console.print("[bold blue]Checking database...[/bold blue]")
    with open_database(db_url) as db:
        console.print(f"Database: {db.engine.url}")
        existing = set(inspect(db.engine).get_table_names())
        db.create_tables()
        created = set(inspect(db.engine).get_table_names()) - existing

    if created:
        console.print(f"[green]✓[/green] Created {len(created)} tables")
    else:
        console.print(
            f"[green]✓[/green] Database already initialized ({len(existing)} tables)"
        )


@db_app.command(name="info")
def database_info(db_url: UrlOption = None) -> None:
    """
    Display database information and row counts.
    """
    from sqlalchemy import func, select

    from gemini_odb.models.orm import Base

    with open_database(db_url) as db:
        console.print(f"[bold blue]Database Info:[/bold blue] {db.engine.url}")
        console.print(f"Dialect: {db.dialect}")

        table = Table(title="Table Statistics")
        table.add_column("Table", style="cyan")
        table.add_column("Rows", style="magenta", justify="right")
        with db.session() as session:
            for name, t in sorted(Base.metadata.tables.items()):
                count = session.scalar(select(func.count()).select_from(t))
                table.add_row(name, str(count))
    console.print(table)


@db_app.command(name="create-program")
def create_program(
    name: Annotated[Optional[str], typer.Argument(help="Program title")] = None,
    db_url: UrlOption = None,
) -> None:
    """Create an empty program and print its id."""
    from gemini_odb.services.editing import ProgramEditor
    from gemini_odb.services.notify import NotificationBus

    with open_database(db_url) as db:
        with db.session() as session:
            program = ProgramEditor(session, bus=NotificationBus()).create(name)
            program_id = program.program_id
    console.print(f"[green]✓[/green] Created program {program_id}")
