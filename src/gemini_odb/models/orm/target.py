"""Target model: Target."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, CheckConstraint, Float, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gemini_odb.constants import ExistenceState, TargetDisposition
from gemini_odb.models.orm.base import Base
from gemini_odb.utils import Created_at, IdKey, Name, fk

if TYPE_CHECKING:
    from gemini_odb.models.orm.program import Program


class Target(Base):
    """
    Sidereal target of a program.

    Attributes
    ----------
    target_id : str
        Identifier, ``t-<hex>``
    disposition : str
        ``science``, ``calibration`` or ``blind_offset``
    ra, dec : float | None
        Base coordinates in degrees
    source_profile : dict | None
        Spectral/spatial source description consumed by the ITC
    """

    __tablename__ = "t_target"

    target_id: Mapped[IdKey]

    program_id: Mapped[str] = fk("t_program.program_id", ondelete="CASCADE", index=True)

    name: Mapped[Name]

    disposition: Mapped[str] = mapped_column(
        String(16),
        default=TargetDisposition.SCIENCE.value,
    )

    existence: Mapped[str] = mapped_column(
        String(16),
        default=ExistenceState.PRESENT.value,
    )

    ra: Mapped[float | None] = mapped_column(Float, nullable=True)
    dec: Mapped[float | None] = mapped_column(Float, nullable=True)
    epoch: Mapped[str | None] = mapped_column(String(16), nullable=True)
    pm_ra: Mapped[float | None] = mapped_column(Float, nullable=True)
    pm_dec: Mapped[float | None] = mapped_column(Float, nullable=True)
    radial_velocity: Mapped[float | None] = mapped_column(Float, nullable=True)
    parallax: Mapped[float | None] = mapped_column(Float, nullable=True)

    source_profile: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[Created_at]

    program: Mapped[Program] = relationship(back_populates="targets")

    __table_args__ = (
        CheckConstraint(
            "disposition IN ('science', 'calibration', 'blind_offset')",
            name="disposition",
        ),
        CheckConstraint("existence IN ('present', 'deleted')", name="existence"),
    )
