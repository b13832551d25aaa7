"""Observation calculation queue (ITC results and execution digests)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from gemini_odb.constants import CalculationState, Channel
from gemini_odb.models.orm import Obscalc
from gemini_odb.models.payload import ExecutionDigest, ObscalcResult, OdbErrorPayload
from gemini_odb.services.calc_queue import CalculationQueue

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from gemini_odb.config import RetryPolicy
    from gemini_odb.services.notify import NotificationBus
    from gemini_odb.utils.time import Clock

__all__ = ["CalculatedValue", "ObscalcService"]


@dataclass(frozen=True)
class CalculatedValue:
    """A derived value together with the state of its calculation.

    ``value`` may be stale when ``state`` is not ``ready``.
    """

    state: CalculationState
    value: ExecutionDigest | None = None
    error: OdbErrorPayload | None = None

    @property
    def is_current(self) -> bool:
        return self.state is CalculationState.READY


class ObscalcService(CalculationQueue[Obscalc]):
    """
    Calculation queue over ``t_obscalc``.

    Examples
    --------
    >>> obscalc = ObscalcService(session, bus=bus)
    >>> obscalc.invalidate("o-100")
    >>> [pending] = obscalc.load(1)
    >>> obscalc.calculate_and_update(pending, calculator)
    """

    def __init__(
        self,
        session: Session,
        bus: NotificationBus | None = None,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        kwargs = {} if clock is None else {"clock": clock}
        super().__init__(
            session,
            Obscalc,
            Channel.OBSCALC_UPDATE,
            bus=bus,
            retry=retry,
            **kwargs,
        )

    def failure_result(self, error: OdbErrorPayload) -> ObscalcResult:
        return ObscalcResult.failure(error)

    def select_execution_digest(self, observation_id: str) -> CalculatedValue | None:
        """
        Execution digest of an observation with its calculation state.

        Returns
        -------
        CalculatedValue | None
            None if the observation has never been calculated or invalidated
        """
        entry = self.get(observation_id)
        if entry is None:
            return None
        result = entry.result
        return CalculatedValue(
            state=entry.calculation_state,
            value=None if result is None else result.digest,
            error=entry.retry_error or (None if result is None else result.error),
        )
