"""Ordered group tree engine.

Every program owns a forest of groups; observations are the leaves. Child
groups and present observations of one parent share a single index space
that must read exactly ``0..n-1``. Edits shift sibling indices with bulk
statements:

- ``open_hole(p, parent, i)``: ``+1`` to every index ``>= i``
- ``close_hole(p, parent, i)``: ``-1`` to every index ``> i``

A move parks the node at index ``-1``, closes the hole it left, opens a hole
at the destination and drops the node in. The intermediate states are not
valid trees; the program is verified once when the transaction commits (see
:mod:`gemini_odb.db.unit_of_work`).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger
from sqlalchemy import func, select, update

from gemini_odb.constants import (
    ID_PREFIX,
    SENTINEL_INDEX,
    Change,
    Channel,
    ExistenceState,
    Operation,
)
from gemini_odb.db.repository import GroupRepository, ObservationRepository, ProgramRepository
from gemini_odb.db.unit_of_work import mark_structure_dirty
from gemini_odb.errors import GroupIndexError, GroupNotEmptyError, ObservationNotFoundError
from gemini_odb.models.orm import BlindOffsetCalc, Group, Obscalc, Observation
from gemini_odb.models.tree import Branch, GroupElement, Leaf, Root
from gemini_odb.services import tree_verify
from gemini_odb.services.notify import Notification
from gemini_odb.utils.ids import next_id

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from gemini_odb.services.invalidation import Invalidator
    from gemini_odb.services.notify import NotificationBus

__all__ = ["GroupTreeService"]

_PRESENT = ExistenceState.PRESENT.value


class GroupTreeService:
    """
    Structural edits of program group trees.

    All operations run inside the caller's transaction.

    Parameters
    ----------
    session : Session
        Session of the surrounding transaction
    bus : NotificationBus, optional
        Publishes ``ch_group_edit`` / ``ch_observation_edit`` messages
    invalidator : Invalidator, optional
        Told about created, deleted and restored observations

    Examples
    --------
    >>> tree = GroupTreeService(session)
    >>> g = tree.insert_group("p-100", name="Nights")
    >>> o = tree.insert_observation("p-100", group_id=g.group_id)
    >>> tree.move_observation(o.observation_id, None, 0)
    """

    def __init__(
        self,
        session: Session,
        bus: NotificationBus | None = None,
        invalidator: Invalidator | None = None,
    ) -> None:
        self.session = session
        self.bus = bus
        self.invalidator = invalidator
        self.programs = ProgramRepository(session)
        self.groups = GroupRepository(session)
        self.observations = ObservationRepository(session)

    # ------------------------------------------------------------------
    # Hole shifting
    # ------------------------------------------------------------------

    def open_hole(self, program_id: str, parent_id: str | None, at_index: int) -> None:
        """Shift every child of ``parent_id`` at ``at_index`` or later up by one."""
        self._shift(program_id, parent_id, at_index, 1)

    def close_hole(self, program_id: str, parent_id: str | None, at_index: int) -> None:
        """Shift every child of ``parent_id`` after ``at_index`` down by one."""
        self._shift(program_id, parent_id, at_index + 1, -1)

    def _shift(
        self,
        program_id: str,
        parent_id: str | None,
        from_index: int,
        delta: int,
    ) -> None:
        self.session.flush()
        self.session.execute(
            update(Group)
            .where(
                Group.program_id == program_id,
                Group.parent_id.is_not_distinct_from(parent_id),
                Group.parent_index >= from_index,
            )
            .values(parent_index=Group.parent_index + delta)
            .execution_options(synchronize_session="fetch")
        )
        self.session.execute(
            update(Observation)
            .where(
                Observation.program_id == program_id,
                Observation.existence == _PRESENT,
                Observation.group_id.is_not_distinct_from(parent_id),
                Observation.group_index >= from_index,
            )
            .values(group_index=Observation.group_index + delta)
            .execution_options(synchronize_session="fetch")
        )
        mark_structure_dirty(self.session, program_id)
        logger.debug(
            f"Shifted children of {parent_id or 'top level'} in {program_id} "
            f"from {from_index} by {delta:+d}"
        )

    # ------------------------------------------------------------------
    # Index helpers
    # ------------------------------------------------------------------

    def max_index(self, program_id: str, parent_id: str | None) -> int | None:
        """Largest non-negative child index under ``parent_id``, or None if empty."""
        max_group = self.session.scalar(
            select(func.max(Group.parent_index)).where(
                Group.program_id == program_id,
                Group.parent_id.is_not_distinct_from(parent_id),
                Group.parent_index >= 0,
            )
        )
        max_obs = self.session.scalar(
            select(func.max(Observation.group_index)).where(
                Observation.program_id == program_id,
                Observation.existence == _PRESENT,
                Observation.group_id.is_not_distinct_from(parent_id),
                Observation.group_index >= 0,
            )
        )
        found = [i for i in (max_group, max_obs) if i is not None]
        return max(found) if found else None

    def next_index(self, program_id: str, parent_id: str | None) -> int:
        """Append position under ``parent_id``: ``max + 1``, or 0 when empty."""
        current = self.max_index(program_id, parent_id)
        return 0 if current is None else current + 1

    def _resolve_index(
        self,
        program_id: str,
        parent_id: str | None,
        index: int | None,
    ) -> int:
        limit = self.next_index(program_id, parent_id)
        if index is None:
            return limit
        if index < 0 or index > limit:
            raise GroupIndexError(parent_id, index, limit)
        return index

    def _check_parent(self, program_id: str, parent_id: str | None) -> None:
        if parent_id is not None:
            self.groups.require_in_program(parent_id, program_id)

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    def move_group(
        self,
        group_id: str,
        dest_parent_id: str | None,
        dest_index: int | None = None,
    ) -> Group:
        """
        Move a group (with its subtree) to a new parent and/or position.

        Parameters
        ----------
        group_id : str
            Group to move
        dest_parent_id : str | None
            New parent in the same program, or None for the top level
        dest_index : int | None, optional
            New position, ``0..max+1`` after removal; None appends

        Returns
        -------
        Group
            The moved group

        Raises
        ------
        GroupNotFoundError
            If the group or the destination parent does not exist
        GroupIndexError
            If ``dest_index`` is out of range
        """
        group = self.groups.require(group_id)
        program_id = group.program_id
        self._check_parent(program_id, dest_parent_id)

        src_parent_id, src_index = group.parent_id, group.parent_index
        group.parent_index = SENTINEL_INDEX
        self.close_hole(program_id, src_parent_id, src_index)

        index = self._resolve_index(program_id, dest_parent_id, dest_index)
        self.open_hole(program_id, dest_parent_id, index)
        group.parent_id = dest_parent_id
        group.parent_index = index
        self.session.flush()

        logger.info(
            f"Moved group {group_id}: ({src_parent_id}, {src_index}) -> ({dest_parent_id}, {index})"
        )
        self._edited(Channel.GROUP_EDIT, group_id, program_id, Operation.UPDATE)
        return group

    def move_observation(
        self,
        observation_id: str,
        dest_group_id: str | None,
        dest_index: int | None = None,
    ) -> Observation:
        """
        Move an observation to a new group and/or position.

        Raises
        ------
        ObservationNotFoundError
            If the observation does not exist or is deleted
        GroupNotFoundError
            If the destination group does not exist in the program
        GroupIndexError
            If ``dest_index`` is out of range
        """
        observation = self._require_present(observation_id)
        program_id = observation.program_id
        self._check_parent(program_id, dest_group_id)

        src_group_id, src_index = observation.group_id, observation.group_index
        observation.group_index = SENTINEL_INDEX
        self.close_hole(program_id, src_group_id, src_index)

        index = self._resolve_index(program_id, dest_group_id, dest_index)
        self.open_hole(program_id, dest_group_id, index)
        observation.group_id = dest_group_id
        observation.group_index = index
        self.session.flush()

        logger.info(
            f"Moved observation {observation_id}: ({src_group_id}, {src_index}) "
            f"-> ({dest_group_id}, {index})"
        )
        self._edited(Channel.OBSERVATION_EDIT, observation_id, program_id, Operation.UPDATE)
        return observation

    # ------------------------------------------------------------------
    # Creation and deletion
    # ------------------------------------------------------------------

    def insert_group(
        self,
        program_id: str,
        parent_id: str | None = None,
        index: int | None = None,
        **properties: Any,
    ) -> Group:
        """
        Create a group at ``index`` under ``parent_id`` (appending by default).

        Parameters
        ----------
        program_id : str
            Owning program
        parent_id : str | None, optional
            Parent group, None for the top level
        index : int | None, optional
            Position, ``0..max+1``; None appends
        **properties
            Group columns (``name``, ``ordered``, ``min_required``, ...)

        Returns
        -------
        Group
            The new group
        """
        self.programs.require(program_id)
        self._check_parent(program_id, parent_id)
        at = self._resolve_index(program_id, parent_id, index)
        self.open_hole(program_id, parent_id, at)
        group = Group(
            group_id=next_id(self.session, ID_PREFIX["group"]),
            program_id=program_id,
            parent_id=parent_id,
            parent_index=at,
            **properties,
        )
        self.groups.create(group)
        logger.info(f"Created group {group.group_id} at ({parent_id}, {at}) in {program_id}")
        self._edited(Channel.GROUP_EDIT, group.group_id, program_id, Operation.INSERT)
        return group

    def insert_observation(
        self,
        program_id: str,
        group_id: str | None = None,
        index: int | None = None,
        **fields: Any,
    ) -> Observation:
        """Create an observation at ``index`` in ``group_id`` (appending by default)."""
        self.programs.require(program_id)
        self._check_parent(program_id, group_id)
        at = self._resolve_index(program_id, group_id, index)
        self.open_hole(program_id, group_id, at)
        observation = Observation(
            observation_id=next_id(self.session, ID_PREFIX["observation"]),
            program_id=program_id,
            existence=_PRESENT,
            group_id=group_id,
            group_index=at,
            **fields,
        )
        self.observations.create(observation)
        logger.info(
            f"Created observation {observation.observation_id} at ({group_id}, {at}) "
            f"in {program_id}"
        )
        self._edited(
            Channel.OBSERVATION_EDIT, observation.observation_id, program_id, Operation.INSERT
        )
        self._invalidate(observation.observation_id)
        return observation

    def delete_group(self, group_id: str) -> None:
        """
        Delete an empty group and close the hole it leaves.

        Raises
        ------
        GroupNotFoundError
            If the group does not exist
        GroupNotEmptyError
            If the group still has child groups or present observations
        """
        group = self.groups.require(group_id)
        n_children = self.groups.count_children(group_id)
        if n_children:
            raise GroupNotEmptyError(group_id, n_children)
        program_id, parent_id, index = group.program_id, group.parent_id, group.parent_index
        self.groups.delete(group)
        self.close_hole(program_id, parent_id, index)
        logger.info(f"Deleted group {group_id} from ({parent_id}, {index})")
        self._edited(Channel.GROUP_EDIT, group_id, program_id, Operation.DELETE)

    def delete_observation(self, observation_id: str) -> None:
        """Hard-delete an observation; its calculation entries go with it."""
        observation = self.observations.require(observation_id)
        program_id = observation.program_id
        location = (
            (observation.group_id, observation.group_index)
            if observation.is_present
            else None
        )
        calcs = [
            (model, channel, self.session.get(model, observation_id))
            for model, channel in (
                (Obscalc, Channel.OBSCALC_UPDATE),
                (BlindOffsetCalc, Channel.BLIND_OFFSET_UPDATE),
            )
        ]
        self.observations.delete(observation)
        if location is not None:
            self.close_hole(program_id, *location)
        logger.info(f"Deleted observation {observation_id}")
        self._edited(Channel.OBSERVATION_EDIT, observation_id, program_id, Operation.DELETE)
        if self.bus is not None:
            for _, channel, entry in calcs:
                if entry is not None:
                    self.bus.publish(
                        self.session,
                        Notification.calculation(
                            channel, observation_id, program_id, entry.state, None,
                            Operation.DELETE,
                        ),
                    )

    def soft_delete_observation(self, observation_id: str) -> Observation:
        """
        Mark an observation deleted; it leaves the index space.

        Deleting an already deleted observation does nothing.
        """
        observation = self.observations.require(observation_id)
        if not observation.is_present:
            return observation
        program_id = observation.program_id
        group_id, index = observation.group_id, observation.group_index
        observation.existence = ExistenceState.DELETED.value
        observation.group_id = None
        observation.group_index = None
        self.session.flush()
        self.close_hole(program_id, group_id, index)
        logger.info(f"Soft-deleted observation {observation_id} from ({group_id}, {index})")
        self._edited(Channel.OBSERVATION_EDIT, observation_id, program_id, Operation.UPDATE)
        self._invalidate(observation_id)
        return observation

    def restore_observation(
        self,
        observation_id: str,
        dest_group_id: str | None = None,
        dest_index: int | None = None,
    ) -> Observation:
        """Bring a deleted observation back at ``dest_index`` (appending by default)."""
        observation = self.observations.require(observation_id)
        if observation.is_present:
            return observation
        program_id = observation.program_id
        self._check_parent(program_id, dest_group_id)
        at = self._resolve_index(program_id, dest_group_id, dest_index)
        self.open_hole(program_id, dest_group_id, at)
        observation.existence = _PRESENT
        observation.group_id = dest_group_id
        observation.group_index = at
        self.session.flush()
        logger.info(f"Restored observation {observation_id} at ({dest_group_id}, {at})")
        self._edited(Channel.OBSERVATION_EDIT, observation_id, program_id, Operation.UPDATE)
        self._invalidate(observation_id)
        return observation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def children(self, program_id: str, parent_id: str | None) -> list[GroupElement]:
        """Children of ``parent_id``, groups and observations, in index order."""
        groups = self.session.execute(
            select(Group.parent_index, Group.group_id).where(
                Group.program_id == program_id,
                Group.parent_id.is_not_distinct_from(parent_id),
            )
        )
        observations = self.session.execute(
            select(Observation.group_index, Observation.observation_id).where(
                Observation.program_id == program_id,
                Observation.existence == _PRESENT,
                Observation.group_id.is_not_distinct_from(parent_id),
            )
        )
        elements = [
            GroupElement(parent_id, i, group_id=gid) for i, gid in groups
        ] + [
            GroupElement(parent_id, i, observation_id=oid) for i, oid in observations
        ]
        return sorted(elements, key=lambda e: (e.index, e.element_id))

    def tree(self, program_id: str) -> Root:
        """Load the whole group tree of a program."""
        self.programs.require(program_id)
        groups = list(
            self.session.execute(
                select(Group).where(Group.program_id == program_id)
            ).scalars()
        )
        observations = self.session.execute(
            select(
                Observation.group_id, Observation.group_index, Observation.observation_id
            ).where(
                Observation.program_id == program_id,
                Observation.existence == _PRESENT,
            )
        ).all()

        slots: dict[str | None, list[tuple[int, Branch | Leaf]]] = {}
        branches = {}
        for g in groups:
            branch = Branch(
                group_id=g.group_id,
                min_required=g.min_required,
                ordered=g.ordered,
                name=g.name,
                description=g.description,
                min_interval=g.min_interval,
                max_interval=g.max_interval,
                system=g.system,
                calibration_roles=list(g.calibration_roles or []),
            )
            branches[g.group_id] = branch
            slots.setdefault(g.parent_id, []).append((g.parent_index, branch))
        for group_id, index, observation_id in observations:
            slots.setdefault(group_id, []).append((index, Leaf(observation_id)))

        def ordered(parent_id: str | None) -> list[Branch | Leaf]:
            return [node for _, node in sorted(slots.get(parent_id, []), key=lambda s: s[0])]

        for group_id, branch in branches.items():
            branch.children = ordered(group_id)
        return Root(program_id=program_id, children=ordered(None))

    # ------------------------------------------------------------------
    # Verification and repair
    # ------------------------------------------------------------------

    def verify_acyclic(self, program_id: str) -> None:
        self.session.flush()
        tree_verify.verify_acyclic(self.session, program_id)

    def verify_indices(self, program_id: str) -> None:
        self.session.flush()
        tree_verify.verify_indices(self.session, program_id)

    def verify(self, program_id: str) -> None:
        self.session.flush()
        tree_verify.verify(self.session, program_id)

    def find_broken(self, program_id: str) -> dict[str | None, list[int]]:
        """
        Parents whose child indices are not ``0..n-1``.

        Returns
        -------
        dict[str | None, list[int]]
            Parent id (None for the top level) to its sorted indices
        """
        self.session.flush()
        buckets = tree_verify.sibling_indices(self.session, program_id)
        return {
            parent_id: sorted(indices)
            for parent_id, indices in buckets.items()
            if sorted(indices) != list(range(len(indices)))
        }

    def repair(self, program_id: str) -> int:
        """
        Close every hole in the program's index spaces.

        Holes are closed from the highest gap down so that each
        ``close_hole`` leaves the lower gaps where they were. Duplicate
        indices are not repaired; they still fail verification.

        Returns
        -------
        int
            Number of holes closed
        """
        closed = 0
        for parent_id, indices in self.find_broken(program_id).items():
            present = set(indices)
            top = max(indices) if indices else -1
            for gap in sorted(set(range(top + 1)) - present, reverse=True):
                self.close_hole(program_id, parent_id, gap)
                closed += 1
        if closed:
            logger.warning(f"Closed {closed} index holes in {program_id}")
        return closed

    def repair_all(self) -> dict[str, int]:
        """Repair every program; returns the holes closed per repaired program."""
        repaired = {}
        for program_id in self.programs.list_ids():
            n = self.repair(program_id)
            if n:
                repaired[program_id] = n
        return repaired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_present(self, observation_id: str) -> Observation:
        observation = self.observations.get(observation_id)
        if observation is None or not observation.is_present:
            raise ObservationNotFoundError(observation_id)
        return observation

    def _edited(
        self,
        channel: Channel,
        entity_id: str,
        program_id: str,
        operation: Operation,
    ) -> None:
        if self.bus is not None:
            self.bus.publish(
                self.session,
                Notification.edit(channel, entity_id, program_id, operation),
            )

    def _invalidate(self, observation_id: str) -> None:
        if self.invalidator is not None:
            self.invalidator.observation_changed(observation_id, Change.OBSERVATION)
