"""Observation calculation queue commands."""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.table import Table

from gemini_odb.cli.common import UrlOption, console, open_database

obscalc_app = typer.Typer(
    name="obscalc",
    help="Observation calculation queue",
    no_args_is_help=True,
)

_STATE_STYLES = {
    "pending": "yellow",
    "retry": "red",
    "calculating": "blue",
    "ready": "green",
}


def _service(session):
    from gemini_odb.config import OdbSettings
    from gemini_odb.services.notify import NotificationBus
    from gemini_odb.services.obscalc import ObscalcService

    return ObscalcService(
        session, bus=NotificationBus(), retry=OdbSettings.from_env().retry
    )


@obscalc_app.command(name="invalidate")
def invalidate(
    observation_ids: Annotated[list[str], typer.Argument(help="Observations to invalidate")],
    db_url: UrlOption = None,
) -> None:
    """Mark observation calculations out of date."""
    with open_database(db_url) as db, db.session() as session:
        service = _service(session)
        results = [(oid, service.invalidate(oid)) for oid in observation_ids]
        states = [(oid, None if e is None else e.state) for oid, e in results]
    for oid, state in states:
        if state is None:
            console.print(f"[yellow]Skipped {oid}: no such observation[/yellow]")
        else:
            console.print(f"[green]✓[/green] {oid}: {state}")


@obscalc_app.command(name="status")
def status(
    program_id: Annotated[
        Optional[str], typer.Argument(help="Program to list (default: state counts)")
    ] = None,
    db_url: UrlOption = None,
) -> None:
    """Show calculation states, per observation or as totals."""
    with open_database(db_url) as db, db.session() as session:
        service = _service(session)
        if program_id is None:
            counts = service.count_by_state()
            entries = None
        else:
            entries = service.select_program(program_id)

    if entries is None:
        table = Table(title="Obscalc states")
        table.add_column("State", style="cyan")
        table.add_column("Entries", style="magenta", justify="right")
        for state, n in counts.items():
            table.add_row(state.value, str(n))
        console.print(table)
        return

    if not entries:
        console.print(f"[yellow]No calculation entries for {program_id}[/yellow]")
        return
    table = Table(title=f"Obscalc {program_id} ({len(entries)} entries)")
    table.add_column("Observation", style="cyan")
    table.add_column("State")
    table.add_column("Last invalidation")
    table.add_column("Failures", justify="right")
    table.add_column("Retry at")
    for e in entries:
        style = _STATE_STYLES.get(e.state, "white")
        table.add_row(
            e.observation_id,
            f"[{style}]{e.state}[/{style}]",
            f"{e.last_invalidation:%Y-%m-%d %H:%M:%S}",
            str(e.failure_count),
            "" if e.retry_at is None else f"{e.retry_at:%H:%M:%S}",
        )
    console.print(table)


@obscalc_app.command(name="reset")
def reset(db_url: UrlOption = None) -> None:
    """Release entries stuck in calculating (after a worker crash)."""
    with open_database(db_url) as db, db.session() as session:
        n = _service(session).reset()
    console.print(f"[green]✓[/green] Released {n} entries")


@obscalc_app.command(name="load")
def load(
    max_entries: Annotated[
        int, typer.Option("--max", "-n", min=1, help="Maximum entries to claim")
    ] = 8,
    db_url: UrlOption = None,
) -> None:
    """Claim pending entries (moves them to calculating) and list them."""
    with open_database(db_url) as db, db.session() as session:
        claims = _service(session).load(max_entries)
    if not claims:
        console.print("[yellow]Nothing to claim[/yellow]")
        return
    for claim in claims:
        console.print(
            f"{claim.observation_id} ({claim.program_id}) "
            f"invalidated {claim.last_invalidation:%Y-%m-%d %H:%M:%S.%f}"
        )
