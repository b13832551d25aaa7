"""Structural verification of a program's group tree.

Two properties hold for every committed program:

1. Group parent pointers are acyclic.
2. Under every parent (the top level included), the indices of child groups
   and present observations together are exactly ``0..n-1``.

The checks read the current (flushed) state and raise on the first
violation. They are run at commit time by :mod:`gemini_odb.db.unit_of_work`.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from loguru import logger
from sqlalchemy import select

from gemini_odb.constants import ExistenceState
from gemini_odb.errors import GroupCycleError, IndexDiscontinuityError
from gemini_odb.models.orm import Group, Observation

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

__all__ = ["sibling_indices", "verify", "verify_acyclic", "verify_indices"]


def verify_acyclic(session: Session, program_id: str) -> None:
    """
    Check that no group is its own ancestor.

    Groups are walked in id order; each walk follows parent pointers until it
    reaches the top level or a group already known to be acyclic.

    Raises
    ------
    GroupCycleError
        Naming the group whose parent pointer closes the first cycle found
    """
    parents = dict(
        session.execute(
            select(Group.group_id, Group.parent_id)
            .where(Group.program_id == program_id)
            .order_by(Group.group_id)
        ).all()
    )
    acyclic: set[str] = set()
    for start in parents:
        path: list[str] = []
        on_path: set[str] = set()
        node: str | None = start
        while node is not None and node not in acyclic:
            path.append(node)
            on_path.add(node)
            parent = parents.get(node)
            if parent in on_path:
                cycle = tuple(path[path.index(parent):])
                raise GroupCycleError(node, parent, cycle, program_id=program_id)
            node = parent
        acyclic.update(path)


def sibling_indices(session: Session, program_id: str) -> dict[str | None, list[int]]:
    """
    Collect child indices per parent, groups and present observations together.

    Returns
    -------
    dict[str | None, list[int]]
        Parent group id (None for the top level) to unsorted child indices
    """
    buckets: dict[str | None, list[int]] = defaultdict(list)
    groups = session.execute(
        select(Group.parent_id, Group.parent_index).where(
            Group.program_id == program_id
        )
    )
    observations = session.execute(
        select(Observation.group_id, Observation.group_index).where(
            Observation.program_id == program_id,
            Observation.existence == ExistenceState.PRESENT.value,
        )
    )
    for parent_id, index in (*groups, *observations):
        buckets[parent_id].append(index)
    return buckets


def verify_indices(session: Session, program_id: str) -> None:
    """
    Check that every parent's children are indexed exactly ``0..n-1``.

    Raises
    ------
    IndexDiscontinuityError
        Naming the parent (None for the top level) of the first bad bucket
    """
    buckets = sibling_indices(session, program_id)
    # Top level first, then groups in id order
    for parent_id in sorted(buckets, key=lambda p: (p is not None, p or "")):
        indices = sorted(buckets[parent_id])
        if indices != list(range(len(indices))):
            raise IndexDiscontinuityError(parent_id, indices, program_id=program_id)


def verify(session: Session, program_id: str) -> None:
    """Run the cycle check, then the index check, for one program."""
    verify_acyclic(session, program_id)
    verify_indices(session, program_id)
    logger.debug(f"Group structure of {program_id} verified")
