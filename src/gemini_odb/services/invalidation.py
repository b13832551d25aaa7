"""Fan-out of upstream edits to derived-calculation queues.

Editing services report *what kind* of input changed; each queue subscribes
to the kinds that affect its result::

    invalidator = Invalidator(session)
    invalidator.subscribe(obscalc_queue, OBSCALC_CHANGES)
    invalidator.observation_changed("o-100", Change.ASTERISM)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger
from sqlalchemy import select

from gemini_odb.constants import Change, ExistenceState
from gemini_odb.models.orm import AsterismTarget, Observation

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.orm import Session

    from gemini_odb.config import RetryPolicy
    from gemini_odb.services.calc_queue import CalculationQueue
    from gemini_odb.services.notify import NotificationBus
    from gemini_odb.utils.time import Clock

__all__ = [
    "BLIND_OFFSET_CHANGES",
    "OBSCALC_CHANGES",
    "Invalidator",
    "Subscription",
    "default_invalidator",
]

OBSCALC_CHANGES = frozenset(Change) - {Change.OBSERVATION_TIME, Change.BLIND_OFFSET}

BLIND_OFFSET_CHANGES = frozenset(
    {
        Change.ASTERISM,
        Change.TARGET_TRACKING,
        Change.OBSERVATION_TIME,
        Change.BLIND_OFFSET,
    }
)


@dataclass(frozen=True)
class Subscription:
    queue: CalculationQueue
    changes: frozenset[Change]


class Invalidator:
    """
    Route change reports to the calculation queues that depend on them.

    Parameters
    ----------
    session : Session
        Session used to resolve target -> observation references
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.subscriptions: list[Subscription] = []

    def subscribe(self, queue: CalculationQueue, changes: Iterable[Change]) -> None:
        self.subscriptions.append(Subscription(queue, frozenset(changes)))

    def observation_changed(self, observation_id: str, change: Change) -> int:
        """
        Invalidate ``observation_id`` in every queue listening to ``change``.

        Returns
        -------
        int
            Number of queues notified
        """
        n = 0
        for sub in self.subscriptions:
            if change in sub.changes:
                sub.queue.invalidate(observation_id)
                n += 1
        logger.debug(f"{change.value} change on {observation_id} reached {n} queues")
        return n

    def observations_changed(self, observation_ids: Iterable[str], change: Change) -> None:
        for observation_id in sorted(set(observation_ids)):
            self.observation_changed(observation_id, change)

    def target_changed(self, target_id: str, change: Change) -> list[str]:
        """
        Invalidate every observation that references ``target_id``.

        References are asterism membership and use as blind offset target.

        Returns
        -------
        list[str]
            Affected observation ids, sorted
        """
        affected = self.observations_using_target(target_id)
        self.observations_changed(affected, change)
        return affected

    def observations_using_target(self, target_id: str) -> list[str]:
        in_asterism = select(AsterismTarget.observation_id).where(
            AsterismTarget.target_id == target_id
        )
        as_blind_offset = select(Observation.observation_id).where(
            Observation.blind_offset_target_id == target_id,
            Observation.existence == ExistenceState.PRESENT.value,
        )
        ids = set(self.session.execute(in_asterism).scalars())
        ids.update(self.session.execute(as_blind_offset).scalars())
        return sorted(ids)


def default_invalidator(
    session: Session,
    bus: NotificationBus | None = None,
    clock: Clock | None = None,
    retry: RetryPolicy | None = None,
) -> Invalidator:
    """
    Invalidator wired to the obscalc and blind offset queues.

    Examples
    --------
    >>> invalidator = default_invalidator(session, bus=bus)
    >>> tree = GroupTreeService(session, bus=bus, invalidator=invalidator)
    """
    from gemini_odb.services.blind_offset import BlindOffsetService
    from gemini_odb.services.obscalc import ObscalcService

    invalidator = Invalidator(session)
    invalidator.subscribe(
        ObscalcService(session, bus=bus, clock=clock, retry=retry), OBSCALC_CHANGES
    )
    invalidator.subscribe(
        BlindOffsetService(session, bus=bus, clock=clock, retry=retry),
        BLIND_OFFSET_CHANGES,
    )
    return invalidator
