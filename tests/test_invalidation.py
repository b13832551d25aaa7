"""Tests for edit paths and their fan-out to the calculation queues."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from gemini_odb.constants import (
    CalculationState,
    Change,
    EtmRole,
    GmosSite,
    ObservingModeType,
    TargetDisposition,
)
from gemini_odb.errors import AsterismError, ObservationNotFoundError, TargetNotFoundError
from gemini_odb.models.orm import BlindOffsetCalc, Obscalc, Observation
from gemini_odb.models.payload import BlindOffsetResult
from gemini_odb.services.blind_offset import BlindOffsetService
from gemini_odb.services.editing import (
    AsterismEditor,
    ExposureTimeModeEditor,
    ObservationEditor,
    ObservingModeEditor,
    TargetEditor,
)
from gemini_odb.services.group_tree import GroupTreeService
from gemini_odb.services.invalidation import (
    BLIND_OFFSET_CHANGES,
    OBSCALC_CHANGES,
    Invalidator,
    default_invalidator,
)

READY = CalculationState.READY.value
PENDING = CalculationState.PENDING.value


@pytest.fixture
def setup(db, program_id, make_tree, make_obscalc, clock):
    """One observation with a science target; obscalc ready, no blind offset yet."""
    with db.session() as session:
        invalidator = default_invalidator(session, clock=clock)
        obs = make_tree(session).insert_observation(program_id)
        target = TargetEditor(session, invalidator=invalidator).create(
            program_id, "NGC 1068", ra=40.67, dec=-0.01
        )
        AsterismEditor(session, invalidator=invalidator).add(
            obs.observation_id, [target.target_id]
        )
        ids = (obs.observation_id, target.target_id)
    # Bring obscalc to ready and blind offset to ready
    clock.advance()
    with db.session() as session:
        obscalc = make_obscalc(session)
        [claim] = obscalc.load(1)
        obscalc.store_result(claim, None, CalculationState.READY)
        blind = BlindOffsetService(session, clock=clock)
        [claim] = blind.load(1)
        blind.store_result(claim, BlindOffsetResult(), CalculationState.READY)
    clock.advance()
    return ids


def states(db, observation_id):
    with db.session() as session:
        obscalc = session.get(Obscalc, observation_id)
        blind = session.get(BlindOffsetCalc, observation_id)
        return (
            None if obscalc is None else obscalc.state,
            None if blind is None else blind.state,
        )


@pytest.fixture
def edit(db, clock):
    """Run one editor call in its own committed transaction."""

    def run(editor_class, method, *args, **kwargs):
        with db.session() as session:
            editor = editor_class(
                session, invalidator=default_invalidator(session, clock=clock)
            )
            return getattr(editor, method)(*args, **kwargs)

    return run


class TestSubscriptions:
    def test_change_sets(self):
        assert Change.OBSERVATION_TIME not in OBSCALC_CHANGES
        assert Change.ASTERISM in OBSCALC_CHANGES
        assert Change.ASTERISM in BLIND_OFFSET_CHANGES
        assert Change.OBSERVING_MODE not in BLIND_OFFSET_CHANGES

    def test_only_matching_queues_notified(self):
        calls = []

        class Recorder:
            def __init__(self, name):
                self.name = name

            def invalidate(self, observation_id):
                calls.append((self.name, observation_id))

        invalidator = Invalidator(session=None)
        invalidator.subscribe(Recorder("obscalc"), OBSCALC_CHANGES)
        invalidator.subscribe(Recorder("blind"), BLIND_OFFSET_CHANGES)
        assert invalidator.observation_changed("o-100", Change.OBSERVING_MODE) == 1
        assert invalidator.observation_changed("o-101", Change.ASTERISM) == 2
        assert calls == [
            ("obscalc", "o-100"),
            ("obscalc", "o-101"),
            ("blind", "o-101"),
        ]


class TestEditors:
    """Each edit path invalidates the queues that depend on it."""

    def test_setup_is_ready(self, db, setup):
        assert states(db, setup[0]) == (READY, READY)

    def test_observation_field(self, db, setup, edit):
        assert edit(ObservationEditor, "update", setup[0], title="M31 core") == {"title"}
        assert states(db, setup[0]) == (PENDING, READY)

    def test_unchanged_field_is_not_an_edit(self, db, setup, edit):
        edit(ObservationEditor, "update", setup[0], title="same")
        assert edit(ObservationEditor, "update", setup[0], title="same") == set()

    def test_observation_time_reaches_blind_offset_only(self, db, setup, edit):
        when = datetime(2025, 6, 1, tzinfo=timezone.utc)
        edit(ObservationEditor, "update", setup[0], observation_time=when)
        assert states(db, setup[0]) == (READY, PENDING)

    def test_structural_fields_rejected(self, db, setup, edit):
        with pytest.raises(ValueError):
            edit(ObservationEditor, "update", setup[0], group_index=3)

    def test_asterism_remove(self, db, setup, edit):
        assert edit(AsterismEditor, "remove", setup[0], [setup[1]]) == 1
        assert states(db, setup[0]) == (PENDING, PENDING)
        assert edit(AsterismEditor, "targets_of", setup[0]) == []

    def test_asterism_rejects_blind_offset_target(self, db, program_id, setup, edit):
        star = edit(
            TargetEditor, "create", program_id, "BO",
            disposition=TargetDisposition.BLIND_OFFSET,
        )
        with pytest.raises(AsterismError):
            edit(AsterismEditor, "add", setup[0], [star.target_id])
        with pytest.raises(TargetNotFoundError):
            edit(AsterismEditor, "replace", setup[0], ["t-fff"])

    def test_asterism_replace_same_set(self, db, setup, edit):
        assert edit(AsterismEditor, "replace", setup[0], [setup[1]]) == [setup[1]]
        assert states(db, setup[0]) == (READY, READY)

    def test_asterism_add_existing_target(self, db, setup, edit):
        assert edit(AsterismEditor, "add", setup[0], [setup[1]]) == []
        assert states(db, setup[0]) == (READY, READY)

    def test_observing_mode(self, db, setup, edit):
        edit(
            ObservingModeEditor, "set_gmos_long_slit",
            setup[0], "B480_G5309", "LONG_SLIT_0_50", 500.0, site=GmosSite.SOUTH,
        )
        assert states(db, setup[0]) == (PENDING, READY)
        with db.session() as session:
            observation = session.get(Observation, setup[0])
            assert observation.observing_mode_type == ObservingModeType.GMOS_SOUTH_LONG_SLIT.value
            assert observation.gmos_long_slit.fpu == "LONG_SLIT_0_50"

        edit(ObservingModeEditor, "set_flamingos2_long_slit", setup[0], "R1200JH", "JH", "LONG_SLIT_2")
        with db.session() as session:
            observation = session.get(Observation, setup[0])
            assert observation.gmos_long_slit is None
            assert observation.flamingos2_long_slit.disperser == "R1200JH"

        edit(ObservingModeEditor, "set_gmos_imaging", setup[0], ["g", "r"], bin=2)
        with db.session() as session:
            observation = session.get(Observation, setup[0])
            assert observation.flamingos2_long_slit is None
            assert observation.gmos_imaging.filters == "g,r"
            assert observation.observing_mode_type == ObservingModeType.GMOS_NORTH_IMAGING.value

        assert edit(ObservingModeEditor, "clear", setup[0])
        assert not edit(ObservingModeEditor, "clear", setup[0])

    def test_exposure_time_mode(self, db, setup, edit):
        etm = edit(ExposureTimeModeEditor, "upsert", setup[0], EtmRole.SCIENCE, 500.0, signal_to_noise=100.0)
        assert etm.mode == "signal_to_noise"
        assert states(db, setup[0]) == (PENDING, READY)

        with pytest.raises(ValueError):
            edit(ExposureTimeModeEditor, "upsert", setup[0], EtmRole.SCIENCE, 500.0, exposure_time_s=10.0)
        assert edit(ExposureTimeModeEditor, "delete", setup[0], EtmRole.SCIENCE)
        assert not edit(ExposureTimeModeEditor, "delete", setup[0], EtmRole.SCIENCE)

    def test_target_name_reaches_obscalc(self, db, setup, edit):
        affected = edit(TargetEditor, "update", setup[1], name="NGC 1068 nucleus")
        assert affected == [setup[0]]
        assert states(db, setup[0]) == (PENDING, READY)

    def test_target_tracking_reaches_both(self, db, setup, edit):
        assert edit(TargetEditor, "update", setup[1], ra=40.7) == [setup[0]]
        assert states(db, setup[0]) == (PENDING, PENDING)


class TestBlindOffset:
    def test_manual_override_blocks_invalidation(self, db, program_id, setup, clock):
        with db.session() as session:
            star = TargetEditor(session).create(
                program_id, "BO", disposition=TargetDisposition.BLIND_OFFSET, ra=1.0, dec=2.0
            )
            service = BlindOffsetService(session, clock=clock)
            entry = service.set_manual_override(setup[0], True, star.target_id)
            assert entry.manual_override
            assert entry.result.ra_deg == 1.0
            star_id = star.target_id

        with db.session() as session:
            invalidator = default_invalidator(session, clock=clock)
            TargetEditor(session, invalidator=invalidator).update(setup[1], ra=41.0)
            observation = session.get(Observation, setup[0])
            assert observation.blind_offset_target_id == star_id
            assert observation.use_blind_offset
        assert states(db, setup[0]) == (PENDING, READY)

        with db.session() as session:
            BlindOffsetService(session, clock=clock).set_manual_override(setup[0], False)
        assert states(db, setup[0]) == (PENDING, PENDING)

    def test_blind_offset_target_edit(self, db, program_id, setup, clock):
        """Observations using a target as blind offset are invalidated too."""
        with db.session() as session:
            star = TargetEditor(session).create(
                program_id, "BO", disposition=TargetDisposition.BLIND_OFFSET
            )
            session.get(Observation, setup[0]).blind_offset_target_id = star.target_id
            star_id = star.target_id

        with db.session() as session:
            invalidator = default_invalidator(session, clock=clock)
            assert TargetEditor(session, invalidator=invalidator).update(
                star_id, dec=-5.0
            ) == [setup[0]]

    def test_stored_selection_is_mirrored(self, db, program_id, setup, clock):
        with db.session() as session:
            star = TargetEditor(session).create(
                program_id, "BO", disposition=TargetDisposition.BLIND_OFFSET
            )
            star_id = star.target_id
        with db.session() as session:
            service = BlindOffsetService(session, clock=clock)
            service.invalidate(setup[0])
            [claim] = service.load(1)
            service.store_result(
                claim, BlindOffsetResult(target_id=star_id), CalculationState.READY
            )
        with db.session() as session:
            assert session.get(Observation, setup[0]).blind_offset_target_id == star_id
            assert session.get(BlindOffsetCalc, setup[0]).target_id == star_id

    def test_manual_override_creates_entry(self, db, program_id, clock):
        with db.session() as session:
            obs = GroupTreeService(session).insert_observation(program_id)
            assert session.get(BlindOffsetCalc, obs.observation_id) is None
            entry = BlindOffsetService(session, clock=clock).set_manual_override(
                obs.observation_id, True
            )
            assert entry.state == READY
            assert entry.manual_override

    def test_manual_override_unknown_observation(self, db, clock):
        with db.session() as session:
            with pytest.raises(ObservationNotFoundError):
                BlindOffsetService(session, clock=clock).set_manual_override("o-fff", True)
