"""Console script for gemini_odb."""

from __future__ import annotations

from typing import Annotated

import typer

from gemini_odb.utils.log import configure_logging

app = typer.Typer(
    name="gemini-odb",
    help="Science program database - group trees and calculation queues",
    no_args_is_help=True,
)


@app.callback()
def main(
    log_level: Annotated[
        str,
        typer.Option("--log-level", envvar="GEMINI_ODB_LOG_LEVEL", help="Log level"),
    ] = "WARNING",
) -> None:
    """Science program database CLI."""
    configure_logging(log_level)


# Import subcommand apps
from gemini_odb.cli.db_commands import db_app  # noqa: E402
from gemini_odb.cli.group_commands import group_app  # noqa: E402
from gemini_odb.cli.obscalc_commands import obscalc_app  # noqa: E402

# Register subcommands
app.add_typer(db_app, name="db", help="Database management operations")
app.add_typer(group_app, name="group", help="Group tree operations")
app.add_typer(obscalc_app, name="obscalc", help="Observation calculation queue")


if __name__ == "__main__":
    app()
