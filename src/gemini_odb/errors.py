"""Exception hierarchy for gemini_odb.

Structural and not-found errors abort the surrounding transaction. They are
raised either eagerly by the services or at commit time by the deferred
structure verification in :mod:`gemini_odb.db.unit_of_work`.
"""

from __future__ import annotations

__all__ = [
    "AsterismError",
    "CalculationStateError",
    "GroupCycleError",
    "GroupIndexError",
    "GroupNotEmptyError",
    "GroupNotFoundError",
    "IndexDiscontinuityError",
    "NotFoundError",
    "ObservationNotFoundError",
    "OdbError",
    "ProgramNotFoundError",
    "StructureError",
    "TargetNotFoundError",
]


class OdbError(Exception):
    """Base class for all gemini_odb errors."""


class StructureError(OdbError):
    """The group tree of a program is (or would become) invalid."""

    def __init__(self, message: str, program_id: str | None = None) -> None:
        super().__init__(message)
        self.program_id = program_id


class GroupCycleError(StructureError):
    """The parent chain of a group loops back on itself.

    Attributes
    ----------
    group_id : str
        Group whose parent pointer closes the cycle
    parent_id : str
        Parent that was already on the walked path
    cycle : tuple[str, ...]
        Group ids on the cycle, in walk order
    """

    def __init__(
        self,
        group_id: str,
        parent_id: str,
        cycle: tuple[str, ...] = (),
        program_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Cycle detected in group structure between {group_id} and {parent_id}.",
            program_id=program_id,
        )
        self.group_id = group_id
        self.parent_id = parent_id
        self.cycle = cycle


class IndexDiscontinuityError(StructureError):
    """Sibling indices under one parent are not exactly ``0..n-1``."""

    def __init__(
        self,
        parent_id: str | None,
        indices: list[int] | None = None,
        program_id: str | None = None,
    ) -> None:
        if parent_id is None:
            message = "Index discontinuity detected in the top-level group."
        else:
            message = f"Index discontinuity detected in group {parent_id}."
        super().__init__(message, program_id=program_id)
        self.parent_id = parent_id
        self.indices = list(indices or [])


class GroupIndexError(StructureError):
    """Requested destination index is outside ``0..max+1``."""

    def __init__(self, parent_id: str | None, index: int, limit: int) -> None:
        where = parent_id or "top-level"
        super().__init__(f"Index {index} is out of range for {where} (0..{limit}).")
        self.parent_id = parent_id
        self.index = index
        self.limit = limit


class GroupNotEmptyError(StructureError):
    """A group with children cannot be deleted."""

    def __init__(self, group_id: str, n_children: int) -> None:
        super().__init__(f"Group {group_id} still has {n_children} children.")
        self.group_id = group_id
        self.n_children = n_children


class NotFoundError(OdbError):
    """Referenced entity does not exist."""

    kind = "Entity"

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"{self.kind} {entity_id} was not found.")
        self.entity_id = entity_id


class ProgramNotFoundError(NotFoundError):
    kind = "Program"


class GroupNotFoundError(NotFoundError):
    kind = "Group"


class ObservationNotFoundError(NotFoundError):
    kind = "Observation"


class TargetNotFoundError(NotFoundError):
    kind = "Target"


class AsterismError(OdbError):
    """Only science and calibration targets may be part of an asterism."""


class CalculationStateError(OdbError):
    """A calculation entry violated its state/retry field invariants.

    This indicates a bug in the state machine, not bad input.
    """
