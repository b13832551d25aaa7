"""Program and group models: Program, Group."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKeyConstraint,
    Integer,
    Interval,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gemini_odb.constants import ExistenceState
from gemini_odb.models.orm.base import Base
from gemini_odb.utils import Created_at, Desc, IdKey, Name, fk

if TYPE_CHECKING:
    from gemini_odb.models.orm.observation import Observation
    from gemini_odb.models.orm.target import Target


class Program(Base):
    """
    Science program, the root owner of groups, observations and targets.

    Attributes
    ----------
    program_id : str
        Identifier, ``p-<hex>``
    name : str | None
        Program title
    existence : str
        ``present`` or ``deleted``
    """

    __tablename__ = "t_program"

    program_id: Mapped[IdKey]

    name: Mapped[Name]

    existence: Mapped[str] = mapped_column(
        String(16),
        default=ExistenceState.PRESENT.value,
    )

    created_at: Mapped[Created_at]

    groups: Mapped[list[Group]] = relationship(
        back_populates="program",
        cascade="all, delete-orphan",
    )

    observations: Mapped[list[Observation]] = relationship(
        back_populates="program",
        cascade="all, delete-orphan",
    )

    targets: Mapped[list[Target]] = relationship(
        back_populates="program",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("existence IN ('present', 'deleted')", name="existence"),
    )


class Group(Base):
    """
    Node of a program's ordered group tree.

    A group sits in the sibling list of its parent (``None`` means the
    top level of the program) at position ``parent_index``. Group and
    observation children of the same parent share one index space.

    Attributes
    ----------
    group_id : str
        Identifier, ``g-<hex>``
    program_id : str
        Owning program
    parent_id : str | None
        Parent group in the same program, or None for top level
    parent_index : int
        Position among the parent's children
    min_required : int | None
        Number of children that must be completed (None means all)
    ordered : bool
        Whether children must be executed in order
    min_interval, max_interval : timedelta | None
        Delay bounds between children
    system : bool
        System-managed group (e.g. calibrations)
    calibration_roles : list[str]
        Calibration roles hosted by a system group
    """

    __tablename__ = "t_group"

    group_id: Mapped[IdKey]

    program_id: Mapped[str] = fk("t_program.program_id", ondelete="CASCADE", index=True)

    parent_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    parent_index: Mapped[int] = mapped_column(Integer)

    name: Mapped[Name]

    description: Mapped[Desc]

    min_required: Mapped[int | None] = mapped_column(Integer, nullable=True)

    ordered: Mapped[bool] = mapped_column(Boolean, default=False)

    min_interval: Mapped[timedelta | None] = mapped_column(Interval, nullable=True)

    max_interval: Mapped[timedelta | None] = mapped_column(Interval, nullable=True)

    system: Mapped[bool] = mapped_column(Boolean, default=False)

    calibration_roles: Mapped[list[Any]] = mapped_column(JSON, default=list)

    created_at: Mapped[Created_at]

    program: Mapped[Program] = relationship(back_populates="groups")

    __table_args__ = (
        UniqueConstraint("program_id", "group_id", name="program_group"),
        # Parent must be in the same program; unenforced when parent_id is NULL
        ForeignKeyConstraint(
            ["program_id", "parent_id"],
            ["t_group.program_id", "t_group.group_id"],
            name="fk_t_group_parent",
        ),
        CheckConstraint(
            "min_required IS NULL OR min_required >= 0", name="min_required"
        ),
        CheckConstraint(
            "min_interval IS NULL OR max_interval IS NULL "
            "OR min_interval <= max_interval",
            name="interval",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"Group({self.group_id!r}, parent={self.parent_id!r}, "
            f"index={self.parent_index})"
        )
