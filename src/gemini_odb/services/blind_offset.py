"""Blind-offset star selection queue.

Runs the same state machine as obscalc over ``t_blind_offset``. A chosen
star is mirrored onto the observation (``blind_offset_target_id``). When the
user picks the star themselves (manual override) invalidation leaves the
entry alone.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from gemini_odb.constants import CalculationState, Channel, Operation, TargetDisposition
from gemini_odb.errors import ObservationNotFoundError, TargetNotFoundError
from gemini_odb.models.orm import BlindOffsetCalc, Observation, Target
from gemini_odb.models.payload import BlindOffsetResult, OdbErrorPayload
from gemini_odb.services.calc_queue import CalculationQueue

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from gemini_odb.config import RetryPolicy
    from gemini_odb.services.notify import NotificationBus
    from gemini_odb.utils.time import Clock

__all__ = ["BlindOffsetService"]


class BlindOffsetService(CalculationQueue[BlindOffsetCalc]):
    """Calculation queue over ``t_blind_offset``."""

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
            BlindOffsetCalc,
            Channel.BLIND_OFFSET_UPDATE,
            bus=bus,
            retry=retry,
            **kwargs,
        )

    def invalidate(self, observation_id: str) -> BlindOffsetCalc | None:
        entry = self.get(observation_id)
        if entry is not None and entry.manual_override:
            logger.debug(f"t_blind_offset: {observation_id} is manually set, not invalidated")
            return entry
        return super().invalidate(observation_id)

    def failure_result(self, error: OdbErrorPayload) -> BlindOffsetResult:
        return BlindOffsetResult(error=error)

    def _on_stored(self, entry: BlindOffsetCalc, result: Any) -> None:
        if not isinstance(result, BlindOffsetResult) or result.is_error:
            return
        entry.target_id = result.target_id
        observation = self.session.get(Observation, entry.observation_id)
        if observation is not None:
            observation.blind_offset_target_id = result.target_id

    def set_manual_override(
        self,
        observation_id: str,
        flag: bool,
        target_id: str | None = None,
    ) -> BlindOffsetCalc:
        """
        Turn the manual override on (optionally choosing the star) or off.

        Turning it on marks the entry ``ready`` with the given star; turning
        it off invalidates the entry so that a star is selected again.

        Raises
        ------
        ObservationNotFoundError
            If the observation does not exist
        TargetNotFoundError
            If ``target_id`` is not a target of the observation's program
        """
        observation = self.session.get(Observation, observation_id)
        if observation is None:
            raise ObservationNotFoundError(observation_id)

        entry = self._lock(observation_id) or super().invalidate(observation_id)
        if entry is None:
            raise ObservationNotFoundError(observation_id)

        if not flag:
            entry.manual_override = False
            self._flush()
            return super().invalidate(observation_id)  # type: ignore[return-value]

        if target_id is not None:
            target = self.session.get(Target, target_id)
            if target is None or target.program_id != observation.program_id:
                raise TargetNotFoundError(target_id)
            target.disposition = TargetDisposition.BLIND_OFFSET.value
            observation.blind_offset_target_id = target_id
            entry.target_id = target_id
            entry.result = BlindOffsetResult(
                target_id=target_id, ra_deg=target.ra, dec_deg=target.dec
            )
        observation.use_blind_offset = True
        old_state = entry.state
        entry.manual_override = True
        entry.state = CalculationState.READY.value
        entry.retry_at = None
        entry.failure_count = 0
        entry.retry_error = None
        entry.last_update = self.clock()
        self._flush()
        self._publish(entry, old_state, Operation.UPDATE)
        logger.info(f"t_blind_offset: {observation_id} manually set to {entry.target_id}")
        return entry
