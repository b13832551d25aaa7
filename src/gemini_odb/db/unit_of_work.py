"""Deferred group-structure verification.

Group and observation edits may pass through invalid intermediate states
(a node parked at index -1, a hole not yet closed). Instead of checking every
statement, programs whose structure was touched are recorded on the session
and verified once, just before the transaction commits. A violation raises
from ``commit()``; the caller's ``Database.session()`` rolls back.

Programs are recorded two ways:

- ``before_flush`` inspects new, deleted and modified ``Group`` and
  ``Observation`` instances for changes to their structural attributes;
- bulk statements (hole shifts) call :func:`mark_structure_dirty` directly.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING

from loguru import logger
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from gemini_odb.models.orm import Group, Observation
from gemini_odb.services.tree_verify import verify

if TYPE_CHECKING:
    from collections.abc import Generator

__all__ = [
    "OdbSession",
    "dirty_programs",
    "mark_structure_dirty",
    "structural_checks_deferred",
    "verify_dirty",
]

_DIRTY_KEY = "gemini_odb.dirty_programs"
_SUSPENDED_KEY = "gemini_odb.checks_suspended"

_STRUCTURAL_ATTRS = {
    Group: ("program_id", "parent_id", "parent_index"),
    Observation: ("program_id", "group_id", "group_index", "existence"),
}


class OdbSession(Session):
    """Session that verifies group structure at commit."""


def dirty_programs(session: Session) -> set[str]:
    """Programs whose structure must be verified before the next commit."""
    return session.info.setdefault(_DIRTY_KEY, set())


def mark_structure_dirty(session: Session, program_id: str) -> None:
    dirty_programs(session).add(program_id)


def verify_dirty(session: Session) -> None:
    """Flush, then verify every recorded program; clears the record on success."""
    session.flush()
    dirty = dirty_programs(session)
    for program_id in sorted(dirty):
        verify(session, program_id)
    dirty.clear()


@contextmanager
def structural_checks_deferred(session: Session) -> Generator[Session, None, None]:
    """
    Suspend commit-time verification for maintenance work.

    Commits inside the block skip the checks; leaving the outermost block
    verifies every program touched so far.

    Examples
    --------
    >>> with structural_checks_deferred(session):
    ...     tree.repair(program_id)
    """
    session.info[_SUSPENDED_KEY] = session.info.get(_SUSPENDED_KEY, 0) + 1
    try:
        yield session
    finally:
        session.info[_SUSPENDED_KEY] -= 1
    if session.info[_SUSPENDED_KEY] == 0:
        verify_dirty(session)


def _structure_changed(obj) -> bool:
    state = inspect(obj)
    return any(
        state.attrs[name].history.has_changes()
        for name in _STRUCTURAL_ATTRS[type(obj)]
    )


@event.listens_for(OdbSession, "before_flush")
def _record_structural_changes(session, flush_context, instances):
    for obj in session.new:
        if isinstance(obj, (Group, Observation)):
            mark_structure_dirty(session, obj.program_id)
    for obj in session.deleted:
        if isinstance(obj, (Group, Observation)):
            mark_structure_dirty(session, obj.program_id)
    for obj in session.dirty:
        if isinstance(obj, (Group, Observation)) and _structure_changed(obj):
            mark_structure_dirty(session, obj.program_id)
            # A program move leaves a hole in the old program
            old = inspect(obj).attrs.program_id.history.deleted
            for program_id in old:
                mark_structure_dirty(session, program_id)


@event.listens_for(OdbSession, "before_commit")
def _verify_before_commit(session):
    if session.info.get(_SUSPENDED_KEY, 0):
        return
    if session.info.get(_DIRTY_KEY):
        logger.debug(f"Verifying group structure of {sorted(session.info[_DIRTY_KEY])}")
    verify_dirty(session)


@event.listens_for(OdbSession, "after_soft_rollback")
def _forget_on_rollback(session, previous_transaction):
    if previous_transaction.parent is None:
        session.info.pop(_DIRTY_KEY, None)
