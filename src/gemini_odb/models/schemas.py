"""Pydantic schemas for CLI/API boundaries.

These schemas are used at external boundaries (CLI input validation, JSON
export, records handed to calculation workers). Internal operations use ORM
objects directly.

Examples
--------
Export to JSON:
    >>> group = session.get(Group, "g-100")
    >>> print(GroupResponse.model_validate(group).model_dump_json(indent=2))
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

__all__ = [
    # Input schemas
    "GroupCreate",
    "GroupMove",
    "ObservationCreate",
    # Response schemas
    "CalculationEntryResponse",
    "GroupResponse",
    "ObservationResponse",
    "PendingCalc",
]


_ID_PATTERN = "^[a-z][a-z0-9]*-[0-9a-f]+$"


# ============================================================================
# Input Schemas
# ============================================================================


class GroupCreate(BaseModel):
    """
    Schema for creating a group.

    Examples
    --------
    >>> data = GroupCreate(program_id="p-100", name="Science", ordered=True)
    >>> tree.insert_group(**data.model_dump())
    """

    program_id: str = Field(..., pattern=_ID_PATTERN, description="Owning program")
    parent_id: str | None = Field(
        None,
        pattern=_ID_PATTERN,
        description="Parent group (None for top level)",
    )
    index: int | None = Field(
        None,
        ge=0,
        description="Position among siblings (None appends)",
    )
    name: str | None = Field(None, max_length=255)
    description: str | None = None
    min_required: int | None = Field(None, ge=0)
    ordered: bool = False
    min_interval: timedelta | None = None
    max_interval: timedelta | None = None

    @model_validator(mode="after")
    def _check_interval(self) -> GroupCreate:
        if (
            self.min_interval is not None
            and self.max_interval is not None
            and self.min_interval > self.max_interval
        ):
            raise ValueError("min_interval must not exceed max_interval")
        return self


class GroupMove(BaseModel):
    """Schema for moving a group or an observation."""

    node_id: str = Field(..., pattern=_ID_PATTERN, description="Group or observation")
    dest_parent_id: str | None = Field(
        None,
        pattern=_ID_PATTERN,
        description="Destination parent group (None for top level)",
    )
    dest_index: int | None = Field(
        None,
        ge=0,
        description="Destination position (None appends)",
    )


class ObservationCreate(BaseModel):
    """Schema for creating an observation."""

    program_id: str = Field(..., pattern=_ID_PATTERN)
    group_id: str | None = Field(None, pattern=_ID_PATTERN)
    index: int | None = Field(None, ge=0)
    title: str | None = Field(None, max_length=255)
    subtitle: str | None = Field(None, max_length=255)
    science_band: str | None = None
    observation_time: datetime | None = None


# ============================================================================
# Response Schemas
# ============================================================================


class GroupResponse(BaseModel):
    """Schema for exporting a Group."""

    model_config = ConfigDict(from_attributes=True)

    group_id: str
    program_id: str
    parent_id: str | None
    parent_index: int
    name: str | None
    description: str | None
    min_required: int | None
    ordered: bool
    min_interval: timedelta | None
    max_interval: timedelta | None
    system: bool


class ObservationResponse(BaseModel):
    """Schema for exporting an Observation."""

    model_config = ConfigDict(from_attributes=True)

    observation_id: str
    program_id: str
    existence: str
    group_id: str | None
    group_index: int | None
    title: str | None
    subtitle: str | None
    status: str
    observing_mode_type: str | None


class CalculationEntryResponse(BaseModel):
    """
    Schema for exporting a calculation entry (obscalc or blind offset).

    ``result`` is the payload dumped to plain JSON data.
    """

    model_config = ConfigDict(from_attributes=True)

    program_id: str
    observation_id: str
    state: str
    last_invalidation: datetime
    last_update: datetime
    retry_at: datetime | None
    failure_count: int
    result: Any | None = None


class PendingCalc(BaseModel):
    """
    A claimed calculation, as handed to a worker.

    ``last_invalidation`` is the value seen at claim time; storing a result
    compares against it to detect invalidations that happened meanwhile.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    program_id: str
    observation_id: str
    last_invalidation: datetime
