"""Group tree commands."""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.tree import Tree

from gemini_odb.cli.common import UrlOption, console, fail, open_database
from gemini_odb.errors import OdbError

group_app = typer.Typer(
    name="group",
    help="Group tree operations",
    no_args_is_help=True,
)

ParentOption = Annotated[
    Optional[str],
    typer.Option("--parent", "-p", help="Parent group id (default: top level)"),
]
IndexOption = Annotated[
    Optional[int],
    typer.Option("--index", "-i", min=0, help="Position among siblings (default: append)"),
]


def _tree_service(session):
    from gemini_odb.services.group_tree import GroupTreeService
    from gemini_odb.services.invalidation import default_invalidator
    from gemini_odb.services.notify import NotificationBus

    bus = NotificationBus()
    return GroupTreeService(
        session, bus=bus, invalidator=default_invalidator(session, bus=bus)
    )


@group_app.command(name="create")
def create_group(
    program_id: Annotated[str, typer.Argument(help="Owning program")],
    parent_id: ParentOption = None,
    index: IndexOption = None,
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="Group name")] = None,
    ordered: Annotated[bool, typer.Option("--ordered", help="Children run in order")] = False,
    db_url: UrlOption = None,
) -> None:
    """Create a group (appended unless --index is given)."""
    from gemini_odb.models.schemas import GroupCreate

    data = GroupCreate(
        program_id=program_id,
        parent_id=parent_id,
        index=index,
        name=name,
        ordered=ordered,
    )
    try:
        with open_database(db_url) as db, db.session() as session:
            group = _tree_service(session).insert_group(**data.model_dump())
            where = (group.group_id, group.parent_id, group.parent_index)
    except OdbError as e:
        raise fail(str(e)) from e
    console.print(
        f"[green]✓[/green] Created group {where[0]} at ({where[1] or 'top level'}, {where[2]})"
    )


@group_app.command(name="add-observation")
def add_observation(
    program_id: Annotated[str, typer.Argument(help="Owning program")],
    group_id: ParentOption = None,
    index: IndexOption = None,
    title: Annotated[Optional[str], typer.Option("--title", help="Observation title")] = None,
    db_url: UrlOption = None,
) -> None:
    """Create an observation (appended unless --index is given)."""
    from gemini_odb.models.schemas import ObservationCreate

    data = ObservationCreate(
        program_id=program_id, group_id=group_id, index=index, title=title
    )
    try:
        with open_database(db_url) as db, db.session() as session:
            observation = _tree_service(session).insert_observation(
                **data.model_dump(exclude_none=True)
            )
            where = (
                observation.observation_id,
                observation.group_id,
                observation.group_index,
            )
    except OdbError as e:
        raise fail(str(e)) from e
    console.print(
        f"[green]✓[/green] Created observation {where[0]} "
        f"at ({where[1] or 'top level'}, {where[2]})"
    )


@group_app.command(name="tree")
def show_tree(
    program_id: Annotated[str, typer.Argument(help="Program to display")],
    db_url: UrlOption = None,
) -> None:
    """Display the group tree of a program."""
    from gemini_odb.models.tree import Branch

    try:
        with open_database(db_url) as db, db.session() as session:
            root = _tree_service(session).tree(program_id)
    except OdbError as e:
        raise fail(str(e)) from e

    def add(node, children):
        for index, child in enumerate(children):
            if isinstance(child, Branch):
                label = f"[bold cyan]{child.group_id}[/bold cyan] [{index}]"
                if child.name:
                    label += f" {child.name}"
                if child.ordered:
                    label += " (ordered)"
                add(node.add(label), child.children)
            else:
                node.add(f"[magenta]{child.observation_id}[/magenta] [{index}]")

    display = Tree(f"[bold]{root.program_id}[/bold]")
    add(display, root.children)
    console.print(display)


@group_app.command(name="move")
def move_group(
    group_id: Annotated[str, typer.Argument(help="Group to move")],
    parent_id: ParentOption = None,
    index: IndexOption = None,
    db_url: UrlOption = None,
) -> None:
    """Move a group (with its subtree) under a new parent and/or position."""
    from gemini_odb.models.schemas import GroupMove

    data = GroupMove(node_id=group_id, dest_parent_id=parent_id, dest_index=index)
    try:
        with open_database(db_url) as db, db.session() as session:
            group = _tree_service(session).move_group(
                data.node_id, data.dest_parent_id, data.dest_index
            )
            where = (group.parent_id, group.parent_index)
    except OdbError as e:
        raise fail(str(e)) from e
    console.print(f"[green]✓[/green] Moved {group_id} to ({where[0] or 'top level'}, {where[1]})")


@group_app.command(name="move-observation")
def move_observation(
    observation_id: Annotated[str, typer.Argument(help="Observation to move")],
    group_id: ParentOption = None,
    index: IndexOption = None,
    db_url: UrlOption = None,
) -> None:
    """Move an observation to a new group and/or position."""
    from gemini_odb.models.schemas import GroupMove

    data = GroupMove(node_id=observation_id, dest_parent_id=group_id, dest_index=index)
    try:
        with open_database(db_url) as db, db.session() as session:
            observation = _tree_service(session).move_observation(
                data.node_id, data.dest_parent_id, data.dest_index
            )
            where = (observation.group_id, observation.group_index)
    except OdbError as e:
        raise fail(str(e)) from e
    console.print(
        f"[green]✓[/green] Moved {observation_id} to ({where[0] or 'top level'}, {where[1]})"
    )


@group_app.command(name="delete")
def delete_group(
    group_id: Annotated[str, typer.Argument(help="Empty group to delete")],
    db_url: UrlOption = None,
) -> None:
    """Delete an empty group."""
    try:
        with open_database(db_url) as db, db.session() as session:
            _tree_service(session).delete_group(group_id)
    except OdbError as e:
        raise fail(str(e)) from e
    console.print(f"[green]✓[/green] Deleted {group_id}")


@group_app.command(name="verify")
def verify_program(
    program_id: Annotated[
        Optional[str], typer.Argument(help="Program to check (default: all)")
    ] = None,
    db_url: UrlOption = None,
) -> None:
    """Check group trees for cycles and index discontinuities."""
    from gemini_odb.db.repository import ProgramRepository

    failures = 0
    with open_database(db_url) as db, db.session() as session:
        tree = _tree_service(session)
        program_ids = (
            [program_id] if program_id else ProgramRepository(session).list_ids()
        )
        for pid in program_ids:
            try:
                tree.verify(pid)
            except OdbError as e:
                failures += 1
                console.print(f"[red]✗[/red] {pid}: {e}")
            else:
                console.print(f"[green]✓[/green] {pid}")
    if failures:
        raise typer.Exit(code=1)


@group_app.command(name="repair")
def repair_programs(
    program_id: Annotated[
        Optional[str], typer.Argument(help="Program to repair (default: all)")
    ] = None,
    db_url: UrlOption = None,
) -> None:
    """Close index holes left in group trees."""
    from gemini_odb.db import structural_checks_deferred

    try:
        with open_database(db_url) as db, db.session() as session:
            tree = _tree_service(session)
            with structural_checks_deferred(session):
                if program_id:
                    repaired = {program_id: tree.repair(program_id)}
                else:
                    repaired = tree.repair_all()
    except OdbError as e:
        raise fail(str(e)) from e
    closed = sum(repaired.values())
    if not closed:
        console.print("[green]✓[/green] Nothing to repair")
        return
    for pid, n in sorted(repaired.items()):
        if n:
            console.print(f"[yellow]Closed {n} holes in {pid}[/yellow]")
