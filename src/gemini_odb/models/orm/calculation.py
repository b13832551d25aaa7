"""Derived-calculation entries: Obscalc, BlindOffsetCalc.

Both tables carry the same state machine columns (``CalculationMeta``):

- ``pending``: invalidated, waiting to be claimed
- ``retry``: last attempt failed recoverably, claimable after ``retry_at``
- ``calculating``: claimed by a worker
- ``ready``: result is current
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gemini_odb.constants import CalculationState
from gemini_odb.models.orm.base import Base
from gemini_odb.models.payload import (
    BlindOffsetResult,
    ObscalcResult,
    OdbErrorPayload,
    adaptix_json_type,
)
from gemini_odb.utils import UtcDateTime, fk

if TYPE_CHECKING:
    from gemini_odb.models.orm.observation import Observation

__all__ = ["BlindOffsetCalc", "CalculationMeta", "Obscalc", "calculation_constraints"]


class CalculationMeta:
    """
    State columns shared by every derived-calculation table.

    Attributes
    ----------
    program_id : str
        Program of the observation
    observation_id : str
        Observation this entry is derived from (primary key)
    state : str
        One of ``CalculationState``
    last_invalidation : datetime
        Time of the most recent invalidation; strictly increasing
    last_update : datetime
        Time of the most recent state change
    retry_at : datetime | None
        Earliest time a ``retry`` entry may be claimed again
    failure_count : int
        Consecutive recoverable failures
    """

    program_id: Mapped[str] = fk("t_program.program_id", ondelete="CASCADE", index=True)

    observation_id: Mapped[str] = fk(
        "t_observation.observation_id", ondelete="CASCADE", primary_key=True
    )

    state: Mapped[str] = mapped_column(
        String(16),
        default=CalculationState.PENDING.value,
        index=True,
    )

    last_invalidation: Mapped[datetime] = mapped_column(UtcDateTime())

    last_update: Mapped[datetime] = mapped_column(UtcDateTime())

    retry_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)

    failure_count: Mapped[int] = mapped_column(Integer, default=0)

    @property
    def calculation_state(self) -> CalculationState:
        return CalculationState(self.state)


def calculation_constraints(tablename: str) -> tuple:
    """Check constraints and claim index for a ``CalculationMeta`` table."""
    return (
        CheckConstraint(
            "state IN ('pending', 'retry', 'calculating', 'ready')", name="state"
        ),
        CheckConstraint("failure_count >= 0", name="failure_count"),
        CheckConstraint(
            "state IN ('retry', 'calculating') "
            "OR (retry_at IS NULL AND failure_count = 0)",
            name="retry_fields",
        ),
        CheckConstraint("state <> 'retry' OR retry_at IS NOT NULL", name="retry_at"),
        Index(f"ix_{tablename}_claim", "state", "last_invalidation"),
    )


class Obscalc(CalculationMeta, Base):
    """
    Observation calculation entry (ITC results and execution digest).

    Attributes
    ----------
    result : ObscalcResult | None
        Latest stored result; errors are stored here as data
    retry_error : OdbErrorPayload | None
        Failure of the latest attempt while in ``retry``; the previous
        ``result`` stays visible meanwhile
    """

    __tablename__ = "t_obscalc"

    result: Mapped[ObscalcResult | None] = mapped_column(
        adaptix_json_type(ObscalcResult),
        nullable=True,
    )

    retry_error: Mapped[OdbErrorPayload | None] = mapped_column(
        adaptix_json_type(OdbErrorPayload),
        nullable=True,
    )

    observation: Mapped[Observation] = relationship(back_populates="obscalc")

    __table_args__ = calculation_constraints("t_obscalc")

    def __repr__(self) -> str:
        return f"Obscalc({self.observation_id!r}, {self.state})"


class BlindOffsetCalc(CalculationMeta, Base):
    """
    Blind-offset star selection entry.

    Attributes
    ----------
    target_id : str | None
        Selected blind offset target
    manual_override : bool
        The user chose the target; invalidation leaves it untouched
    result : BlindOffsetResult | None
        Latest stored selection
    """

    __tablename__ = "t_blind_offset"

    target_id: Mapped[str | None] = fk(
        "t_target.target_id", ondelete="SET NULL", nullable=True
    )

    manual_override: Mapped[bool] = mapped_column(Boolean, default=False)

    result: Mapped[BlindOffsetResult | None] = mapped_column(
        adaptix_json_type(BlindOffsetResult),
        nullable=True,
    )

    retry_error: Mapped[OdbErrorPayload | None] = mapped_column(
        adaptix_json_type(OdbErrorPayload),
        nullable=True,
    )

    observation: Mapped[Observation] = relationship(back_populates="blind_offset")

    __table_args__ = calculation_constraints("t_blind_offset")

    def __repr__(self) -> str:
        return f"BlindOffsetCalc({self.observation_id!r}, {self.state})"
