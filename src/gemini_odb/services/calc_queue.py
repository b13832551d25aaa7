"""Invalidation and retry state machine for derived calculations.

Each calculation table (``CalculationMeta`` subclass) holds at most one entry
per observation::

    (absent) --invalidate--> pending --load--> calculating --store--> ready
                                ^                  |  \\
                                |   invalidated    |   \\ recoverable failure
                                +------------------+    +--> retry --(retry_at)--> calculating

An invalidation while ``calculating`` only moves ``last_invalidation``
forward; the result stored by the worker is then compared against the
claim-time value and the entry goes back to ``pending`` instead of ``ready``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from gemini_odb.config import RetryPolicy
from gemini_odb.constants import CalculationState, Channel, Operation
from gemini_odb.errors import CalculationStateError
from gemini_odb.models.orm import CalculationMeta, Observation
from gemini_odb.models.payload import OdbErrorPayload, dump_payload
from gemini_odb.models.schemas import CalculationEntryResponse, PendingCalc
from gemini_odb.services.notify import Notification, NotificationBus
from gemini_odb.utils.time import Clock, after, utc_now

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.orm import Session

__all__ = ["CalculationQueue", "Calculator"]

M = TypeVar("M", bound=CalculationMeta)


class Calculator(Protocol):
    """External computation behind a calculation table (ITC, sequence, ...)."""

    def calculate(self, pending: PendingCalc) -> Any:
        ...


class CalculationQueue(Generic[M]):
    """
    Work queue over one calculation table.

    Parameters
    ----------
    session : Session
        Session of the surrounding transaction
    model : type[M]
        Calculation table (``Obscalc``, ``BlindOffsetCalc``)
    channel : Channel
        Channel on which state changes are published
    bus : NotificationBus, optional
        Notification bus; no notifications are published without one
    clock : Clock, optional
        Source of "now", by default ``utc_now``
    retry : RetryPolicy, optional
        Backoff for recoverable failures
    """

    def __init__(
        self,
        session: Session,
        model: type[M],
        channel: Channel,
        bus: NotificationBus | None = None,
        clock: Clock = utc_now,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.session = session
        self.model = model
        self.channel = channel
        self.bus = bus
        self.clock = clock
        self.retry = retry or RetryPolicy()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def invalidate(self, observation_id: str) -> M | None:
        """
        Mark the observation's calculation out of date.

        Creates the entry (``pending``) on first use; if a concurrent
        transaction wins that insert, this call updates its row instead. An
        entry that is being calculated keeps its state; any other entry
        becomes ``pending``. In all cases retry bookkeeping is reset and
        ``last_invalidation`` moves strictly forward.

        Parameters
        ----------
        observation_id : str
            Observation whose inputs changed

        Returns
        -------
        M | None
            The entry, or None if the observation does not exist
        """
        program_id = self.session.scalar(
            select(Observation.program_id).where(
                Observation.observation_id == observation_id
            )
        )
        if program_id is None:
            return None

        now = self.clock()
        if self._insert_pending(program_id, observation_id, now):
            entry = self._lock(observation_id)
            self._publish(entry, None, Operation.INSERT)
            logger.debug(f"{self.model.__tablename__}: created {observation_id} as pending")
            return entry

        entry = self._lock(observation_id)
        old_state = entry.state
        entry.last_invalidation = after(entry.last_invalidation, now)
        entry.failure_count = 0
        entry.retry_at = None
        if old_state != CalculationState.CALCULATING.value:
            entry.state = CalculationState.PENDING.value
            entry.retry_error = None
        self._flush()
        self._publish(entry, old_state, Operation.UPDATE)
        logger.debug(
            f"{self.model.__tablename__}: invalidated {observation_id} ({old_state} -> {entry.state})"
        )
        return entry

    def invalidate_many(self, observation_ids: Iterable[str]) -> list[M]:
        """Invalidate each observation once, in sorted order."""
        entries = (self.invalidate(oid) for oid in sorted(set(observation_ids)))
        return [e for e in entries if e is not None]

    def load(self, max_entries: int) -> list[PendingCalc]:
        """
        Claim up to ``max_entries`` entries for calculation.

        Entries in ``pending``, or in ``retry`` whose ``retry_at`` has passed,
        are taken oldest invalidation first and moved to ``calculating``.
        Rows locked by another transaction are skipped.

        Returns
        -------
        list[PendingCalc]
            Claims, each carrying the claim-time ``last_invalidation``
        """
        if max_entries <= 0:
            return []
        stmt = (
            select(self.model)
            .where(self._claimable(self.clock()))
            .order_by(self.model.last_invalidation, self.model.observation_id)
            .limit(max_entries)
            .with_for_update(skip_locked=True)
        )
        entries = list(self.session.execute(stmt).scalars())
        claims = [self._claim(entry) for entry in entries]
        self._flush()
        if claims:
            logger.info(f"{self.model.__tablename__}: claimed {len(claims)} entries")
        return claims

    def load_observation(self, observation_id: str) -> PendingCalc | None:
        """Claim one observation's entry if it is claimable."""
        stmt = (
            select(self.model)
            .where(
                self.model.observation_id == observation_id,
                self._claimable(self.clock()),
            )
            .with_for_update(skip_locked=True)
        )
        entry = self.session.execute(stmt).scalar_one_or_none()
        if entry is None:
            return None
        claim = self._claim(entry)
        self._flush()
        return claim

    def reset(self) -> int:
        """
        Release every ``calculating`` entry, e.g. after a worker restart.

        Entries that were claimed from ``retry`` (``retry_at`` set) go back
        to ``retry``; the others go back to ``pending``.

        Returns
        -------
        int
            Number of entries released
        """
        entries = list(
            self.session.execute(
                select(self.model)
                .where(self.model.state == CalculationState.CALCULATING.value)
                .with_for_update()
            ).scalars()
        )
        for entry in entries:
            old_state = entry.state
            entry.state = (
                CalculationState.RETRY.value
                if entry.retry_at is not None
                else CalculationState.PENDING.value
            )
            self._publish(entry, old_state, Operation.UPDATE)
        self._flush()
        if entries:
            logger.info(f"{self.model.__tablename__}: reset {len(entries)} calculating entries")
        return len(entries)

    def store_result(
        self,
        pending: PendingCalc,
        result: Any,
        expected: CalculationState,
    ) -> M | None:
        """
        Store the outcome of a claimed calculation.

        If the entry was invalidated since it was claimed, the new state is
        ``pending`` whatever ``expected`` says; the result is still stored.

        Parameters
        ----------
        pending : PendingCalc
            The claim returned by ``load``
        result : Any
            Result payload; for a ``retry`` transition, an ``OdbErrorPayload``
            or a payload carrying one in ``error``
        expected : CalculationState
            ``ready`` or ``retry``

        Returns
        -------
        M | None
            The updated entry, or None if it no longer exists
        """
        entry = self._lock(pending.observation_id)
        if entry is None:
            logger.info(f"{self.model.__tablename__}: {pending.observation_id} vanished")
            return None

        new_state = (
            expected
            if entry.last_invalidation == pending.last_invalidation
            else CalculationState.PENDING
        )
        if new_state is not expected:
            logger.warning(
                f"{self.model.__tablename__}: result for {pending.observation_id} is stale, "
                "back to pending"
            )

        now = self.clock()
        old_state = entry.state
        entry.state = new_state.value
        entry.last_update = now
        if new_state is CalculationState.RETRY:
            entry.retry_at = now + self.retry.delay(entry.failure_count)
            entry.failure_count = entry.failure_count + 1
            logger.warning(
                f"{self.model.__tablename__}: {pending.observation_id} failed "
                f"({entry.failure_count}x), retry at {entry.retry_at:%H:%M:%S}"
            )
        else:
            entry.retry_at = None
            entry.failure_count = 0
        if expected is CalculationState.RETRY:
            # A failed attempt leaves the previous result in place
            entry.retry_error = (
                _error_of(result) if new_state is CalculationState.RETRY else None
            )
        else:
            entry.retry_error = None
            entry.result = result
            self._on_stored(entry, result)
        self._flush()
        self._publish(entry, old_state, Operation.UPDATE)
        logger.info(f"{self.model.__tablename__}: {pending.observation_id} {old_state} -> {entry.state}")
        return entry

    def mark_failed(self, pending: PendingCalc, error: OdbErrorPayload) -> M | None:
        """Record a recoverable failure (``store_result`` with ``retry``)."""
        return self.store_result(pending, error, CalculationState.RETRY)

    def calculate_and_update(
        self,
        pending: PendingCalc,
        calculator: Calculator,
    ) -> M | None:
        """
        Run ``calculator`` for a claim and store the outcome.

        A result whose error is a remote service failure is stored as
        ``retry``; any other result, error payloads included, as ``ready``.
        An exception from the calculator is recorded as ``update_failed``
        and retried.

        Parameters
        ----------
        pending : PendingCalc
            The claim returned by ``load``
        calculator : Calculator
            Computes the payload; called before any statement of this
            transaction is issued

        Returns
        -------
        M | None
            The updated entry, or None if it no longer exists
        """
        try:
            result = calculator.calculate(pending)
        except Exception as e:
            logger.warning(
                f"{self.model.__tablename__}: calculation of {pending.observation_id} raised {e!r}"
            )
            error = OdbErrorPayload.update_failed(str(e) or type(e).__name__)
            return self.store_result(
                pending, self.failure_result(error), CalculationState.RETRY
            )
        error = _error_of(result)
        expected = (
            CalculationState.RETRY
            if error is not None and error.is_recoverable
            else CalculationState.READY
        )
        return self.store_result(pending, result, expected)

    def failure_result(self, error: OdbErrorPayload) -> Any:
        """Wrap ``error`` in this table's result payload type."""
        return error

    def delete(self, observation_id: str) -> None:
        """Drop the entry, publishing a ``DELETE`` if there was one."""
        entry = self._lock(observation_id)
        if entry is None:
            return
        self.session.delete(entry)
        self._flush()
        self._publish(entry, entry.state, Operation.DELETE, deleted=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, observation_id: str) -> M | None:
        return self.session.get(self.model, observation_id)

    def select_one(self, observation_id: str) -> CalculationEntryResponse | None:
        entry = self.get(observation_id)
        return None if entry is None else self._response(entry)

    def select_many(self, observation_ids: Iterable[str]) -> list[CalculationEntryResponse]:
        entries = self.session.execute(
            select(self.model)
            .where(self.model.observation_id.in_(list(observation_ids)))
            .order_by(self.model.observation_id)
        ).scalars()
        return [self._response(e) for e in entries]

    def select_program(self, program_id: str) -> list[CalculationEntryResponse]:
        entries = self.session.execute(
            select(self.model)
            .where(self.model.program_id == program_id)
            .order_by(self.model.observation_id)
        ).scalars()
        return [self._response(e) for e in entries]

    def count_by_state(self) -> dict[CalculationState, int]:
        counts = {state: 0 for state in CalculationState}
        for state in self.session.execute(select(self.model.state)).scalars():
            counts[CalculationState(state)] += 1
        return counts

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_stored(self, entry: M, result: Any) -> None:
        """Hook run after a non-failure result is written to ``entry``."""

    def _claimable(self, now):
        return or_(
            self.model.state == CalculationState.PENDING.value,
            (self.model.state == CalculationState.RETRY.value)
            & (self.model.retry_at <= now),
        )

    def _claim(self, entry: M) -> PendingCalc:
        old_state = entry.state
        entry.state = CalculationState.CALCULATING.value
        self._publish(entry, old_state, Operation.UPDATE)
        return PendingCalc(
            program_id=entry.program_id,
            observation_id=entry.observation_id,
            last_invalidation=entry.last_invalidation,
        )

    def _insert_pending(self, program_id: str, observation_id: str, now) -> bool:
        """Create a ``pending`` entry unless one exists; True if this call created it.

        A missing row cannot be locked, so creation relies on the primary key
        (``ON CONFLICT DO NOTHING``) rather than ``FOR UPDATE``.
        """
        dialect = self.session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(self.model.__table__)
            .values(
                program_id=program_id,
                observation_id=observation_id,
                state=CalculationState.PENDING.value,
                last_invalidation=now,
                last_update=now,
                retry_at=None,
                failure_count=0,
            )
            .on_conflict_do_nothing(index_elements=["observation_id"])
            .returning(self.model.__table__.c.observation_id)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _lock(self, observation_id: str) -> M | None:
        return self.session.execute(
            select(self.model)
            .where(self.model.observation_id == observation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _flush(self) -> None:
        try:
            self.session.flush()
        except IntegrityError as e:
            raise CalculationStateError(
                f"{self.model.__tablename__}: state invariant violated: {e.orig}"
            ) from e

    def _publish(
        self,
        entry: M,
        old_state: str | None,
        operation: Operation,
        deleted: bool = False,
    ) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            self.session,
            Notification.calculation(
                self.channel,
                entry.observation_id,
                entry.program_id,
                old_state,
                None if deleted else entry.state,
                operation,
            ),
        )

    def _response(self, entry: M) -> CalculationEntryResponse:
        response = CalculationEntryResponse.model_validate(entry, from_attributes=True)
        result = getattr(entry, "result", None)
        return response.model_copy(
            update={"result": None if result is None else dump_payload(result)}
        )


def _error_of(result: Any) -> OdbErrorPayload | None:
    if isinstance(result, OdbErrorPayload):
        return result
    return getattr(result, "error", None)
