"""Tests for Pydantic schemas (CLI/API boundaries)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from gemini_odb.models.orm import Group
from gemini_odb.models.schemas import (
    GroupCreate,
    GroupMove,
    GroupResponse,
    ObservationCreate,
    PendingCalc,
)


class TestGroupCreate:
    """Test GroupCreate input validation."""

    def test_defaults_append_at_top_level(self) -> None:
        data = GroupCreate(program_id="p-100")
        assert data.parent_id is None
        assert data.index is None
        assert data.ordered is False

    def test_invalid_ids(self) -> None:
        with pytest.raises(ValidationError):
            GroupCreate(program_id="program 1")
        with pytest.raises(ValidationError):
            GroupCreate(program_id="p-100", parent_id="G-100")

    def test_negative_index(self) -> None:
        with pytest.raises(ValidationError):
            GroupCreate(program_id="p-100", index=-1)

    def test_interval_order(self) -> None:
        GroupCreate(
            program_id="p-100",
            min_interval=timedelta(hours=1),
            max_interval=timedelta(hours=1),
        )
        with pytest.raises(ValidationError, match="min_interval"):
            GroupCreate(
                program_id="p-100",
                min_interval=timedelta(hours=2),
                max_interval=timedelta(hours=1),
            )


def test_group_move_and_observation_create() -> None:
    move = GroupMove(node_id="o-1ff", dest_parent_id="g-100")
    assert move.dest_index is None
    with pytest.raises(ValidationError):
        GroupMove(node_id="o-100", dest_index=-2)

    data = ObservationCreate(program_id="p-100", title="M31")
    assert data.model_dump(exclude_none=True) == {"program_id": "p-100", "title": "M31"}


def test_group_response_from_orm() -> None:
    group = Group(
        group_id="g-100",
        program_id="p-100",
        parent_id=None,
        parent_index=0,
        name="Science",
        description=None,
        min_required=None,
        ordered=True,
        min_interval=None,
        max_interval=None,
        system=False,
    )
    response = GroupResponse.model_validate(group)
    assert response.group_id == "g-100"
    assert response.ordered is True
    assert '"parent_index":0' in response.model_dump_json()


def test_pending_calc_is_frozen() -> None:
    pending = PendingCalc(
        program_id="p-100",
        observation_id="o-100",
        last_invalidation=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    with pytest.raises(ValidationError):
        pending.observation_id = "o-101"
    assert hash(pending) == hash(pending.model_copy())
