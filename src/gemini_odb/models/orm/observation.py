"""Observation models: Observation, AsterismTarget."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gemini_odb.constants import ExistenceState
from gemini_odb.models.orm.base import Base
from gemini_odb.utils import Created_at, IdKey, Name, Timestamp, fk

if TYPE_CHECKING:
    from gemini_odb.models.orm.calculation import BlindOffsetCalc, Obscalc
    from gemini_odb.models.orm.mode import (
        ExposureTimeMode,
        Flamingos2LongSlit,
        GmosImaging,
        GmosLongSlit,
    )
    from gemini_odb.models.orm.program import Group, Program
    from gemini_odb.models.orm.target import Target


class Observation(Base):
    """
    Observation, a leaf of the program's group tree.

    A present observation always has a ``group_index``; a deleted one has
    left the index space and has neither ``group_id`` nor ``group_index``.

    Attributes
    ----------
    observation_id : str
        Identifier, ``o-<hex>``
    program_id : str
        Owning program
    existence : str
        ``present`` or ``deleted``
    group_id : str | None
        Containing group, or None for top level
    group_index : int | None
        Position among the group's children
    observing_mode_type : str | None
        Which observing mode table holds the configuration
    use_blind_offset : bool
        Whether a blind offset star is used for acquisition
    blind_offset_target_id : str | None
        The blind offset target, if chosen
    """

    __tablename__ = "t_observation"

    observation_id: Mapped[IdKey]

    program_id: Mapped[str] = fk("t_program.program_id", ondelete="CASCADE", index=True)

    existence: Mapped[str] = mapped_column(
        String(16),
        default=ExistenceState.PRESENT.value,
    )

    group_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    group_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    title: Mapped[Name]

    subtitle: Mapped[Name]

    status: Mapped[str] = mapped_column(String(16), default="new")

    calibration_role: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Constraint set
    image_quality: Mapped[str | None] = mapped_column(String(16), nullable=True)
    cloud_extinction: Mapped[str | None] = mapped_column(String(16), nullable=True)
    sky_background: Mapped[str | None] = mapped_column(String(16), nullable=True)
    water_vapor: Mapped[str | None] = mapped_column(String(16), nullable=True)
    air_mass_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    air_mass_max: Mapped[float | None] = mapped_column(Float, nullable=True)

    science_band: Mapped[str | None] = mapped_column(String(16), nullable=True)

    observation_time: Mapped[Timestamp]

    explicit_ra: Mapped[float | None] = mapped_column(Float, nullable=True)
    explicit_dec: Mapped[float | None] = mapped_column(Float, nullable=True)

    observing_mode_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    use_blind_offset: Mapped[bool] = mapped_column(Boolean, default=False)

    blind_offset_target_id: Mapped[str | None] = fk(
        "t_target.target_id", ondelete="SET NULL", nullable=True
    )

    created_at: Mapped[Created_at]

    program: Mapped[Program] = relationship(back_populates="observations")

    # Orders inserts after the parent group; tree code writes group_id directly
    group: Mapped[Group | None] = relationship(
        foreign_keys=[program_id, group_id],
        overlaps="program,observations",
    )

    asterism: Mapped[list[AsterismTarget]] = relationship(
        back_populates="observation",
        cascade="all, delete-orphan",
    )

    obscalc: Mapped[Obscalc | None] = relationship(
        back_populates="observation",
        cascade="all, delete-orphan",
    )

    blind_offset: Mapped[BlindOffsetCalc | None] = relationship(
        back_populates="observation",
        cascade="all, delete-orphan",
    )

    gmos_long_slit: Mapped[GmosLongSlit | None] = relationship(
        cascade="all, delete-orphan",
    )

    flamingos2_long_slit: Mapped[Flamingos2LongSlit | None] = relationship(
        cascade="all, delete-orphan",
    )

    gmos_imaging: Mapped[GmosImaging | None] = relationship(
        cascade="all, delete-orphan",
    )

    exposure_time_modes: Mapped[list[ExposureTimeMode]] = relationship(
        cascade="all, delete-orphan",
    )

    blind_offset_target: Mapped[Target | None] = relationship(
        foreign_keys=[blind_offset_target_id],
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["program_id", "group_id"],
            ["t_group.program_id", "t_group.group_id"],
            name="fk_t_observation_group",
        ),
        CheckConstraint(
            "(existence = 'present' AND group_index IS NOT NULL) "
            "OR (existence = 'deleted' AND group_index IS NULL AND group_id IS NULL)",
            name="existence_index",
        ),
        CheckConstraint(
            "air_mass_min IS NULL OR air_mass_max IS NULL "
            "OR air_mass_min <= air_mass_max",
            name="air_mass",
        ),
        Index("ix_t_observation_group", "program_id", "group_id", "group_index"),
    )

    @property
    def is_present(self) -> bool:
        return self.existence == ExistenceState.PRESENT.value

    def __repr__(self) -> str:
        return (
            f"Observation({self.observation_id!r}, group={self.group_id!r}, "
            f"index={self.group_index})"
        )


class AsterismTarget(Base):
    """
    Link between an observation and one of its asterism targets.

    Composite primary key (observation_id, target_id).
    """

    __tablename__ = "t_asterism_target"

    program_id: Mapped[str] = fk("t_program.program_id", ondelete="CASCADE")

    observation_id: Mapped[str] = fk(
        "t_observation.observation_id", ondelete="CASCADE", primary_key=True
    )

    target_id: Mapped[str] = fk(
        "t_target.target_id", ondelete="CASCADE", primary_key=True, index=True
    )

    observation: Mapped[Observation] = relationship(back_populates="asterism")

    target: Mapped[Target] = relationship()
