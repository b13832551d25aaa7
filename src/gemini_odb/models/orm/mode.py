"""Observing mode and exposure time mode models.

Each observing mode table is keyed by observation; an observation has at most
one row across them, named by ``Observation.observing_mode_type``.
"""

from __future__ import annotations

from sqlalchemy import CheckConstraint, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gemini_odb.constants import GmosSite
from gemini_odb.models.orm.base import Base
from gemini_odb.utils import Pk, fk


class GmosLongSlit(Base):
    """GMOS long slit configuration (north or south)."""

    __tablename__ = "t_gmos_long_slit"

    observation_id: Mapped[str] = fk(
        "t_observation.observation_id", ondelete="CASCADE", primary_key=True
    )

    site: Mapped[str] = mapped_column(String(8), default=GmosSite.NORTH.value)

    grating: Mapped[str] = mapped_column(String(32))

    filter: Mapped[str | None] = mapped_column(String(32), nullable=True)

    fpu: Mapped[str] = mapped_column(String(32))

    central_wavelength_nm: Mapped[float] = mapped_column(Float)

    x_bin: Mapped[int | None] = mapped_column(Integer, nullable=True)

    y_bin: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (CheckConstraint("site IN ('north', 'south')", name="site"),)


class Flamingos2LongSlit(Base):
    """Flamingos 2 long slit configuration."""

    __tablename__ = "t_flamingos_2_long_slit"

    observation_id: Mapped[str] = fk(
        "t_observation.observation_id", ondelete="CASCADE", primary_key=True
    )

    disperser: Mapped[str] = mapped_column(String(32))

    filter: Mapped[str] = mapped_column(String(32))

    fpu: Mapped[str] = mapped_column(String(32))

    read_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)


class GmosImaging(Base):
    """GMOS imaging configuration (north or south)."""

    __tablename__ = "t_gmos_imaging"

    observation_id: Mapped[str] = fk(
        "t_observation.observation_id", ondelete="CASCADE", primary_key=True
    )

    site: Mapped[str] = mapped_column(String(8), default=GmosSite.NORTH.value)

    filters: Mapped[str] = mapped_column(String(255))

    bin: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (CheckConstraint("site IN ('north', 'south')", name="site"),)


class ExposureTimeMode(Base):
    """
    Exposure time mode of an observation.

    Attributes
    ----------
    role : str
        ``requirement``, ``science`` or ``acquisition``
    mode : str
        ``signal_to_noise`` (needs ``signal_to_noise``) or
        ``time_and_count`` (needs ``exposure_time`` and ``exposure_count``)
    wavelength_nm : float
        Wavelength at which signal-to-noise is evaluated
    """

    __tablename__ = "t_exposure_time_mode"

    pk: Mapped[Pk]

    observation_id: Mapped[str] = fk(
        "t_observation.observation_id", ondelete="CASCADE", index=True
    )

    role: Mapped[str] = mapped_column(String(16))

    mode: Mapped[str] = mapped_column(String(16))

    signal_to_noise: Mapped[float | None] = mapped_column(Float, nullable=True)

    wavelength_nm: Mapped[float] = mapped_column(Float)

    exposure_time_s: Mapped[float | None] = mapped_column(Float, nullable=True)

    exposure_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "role IN ('requirement', 'science', 'acquisition')", name="role"
        ),
        CheckConstraint(
            "(mode = 'signal_to_noise' AND signal_to_noise IS NOT NULL) "
            "OR (mode = 'time_and_count' AND exposure_time_s IS NOT NULL "
            "AND exposure_count IS NOT NULL)",
            name="mode",
        ),
    )
