"""Tests for the obscalc invalidation and retry state machine."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import event

from gemini_odb.constants import CalculationState, ExecutionState, ObsClass, OdbErrorKind
from gemini_odb.errors import CalculationStateError
from gemini_odb.models.orm import Obscalc
from gemini_odb.models.payload import (
    ExecutionDigest,
    ObscalcResult,
    OdbErrorPayload,
    SequenceDigest,
    SetupTime,
)
from gemini_odb.services.editing import ProgramEditor
from gemini_odb.services.group_tree import GroupTreeService

PENDING = CalculationState.PENDING.value
CALCULATING = CalculationState.CALCULATING.value
READY = CalculationState.READY.value
RETRY = CalculationState.RETRY.value


def digest_result(atoms: int = 3) -> ObscalcResult:
    return ObscalcResult(
        digest=ExecutionDigest(
            setup=SetupTime(full_s=960.0, reacquisition_s=300.0),
            acquisition=SequenceDigest(ObsClass.ACQUISITION, 120.0, 1),
            science=SequenceDigest(
                ObsClass.SCIENCE, 1800.0, atoms, offsets=[(0.0, 0.0), (0.0, 15.0)]
            ),
            execution_state=ExecutionState.NOT_STARTED,
        )
    )


@pytest.fixture
def observation_id(db, program_id, make_tree, clock):
    """A committed observation whose obscalc entry is pending."""
    with db.session() as session:
        return make_tree(session).insert_observation(program_id).observation_id


@pytest.fixture
def claimed(db, observation_id, make_obscalc, clock):
    """Claim of the observation, taken one second after creation."""
    clock.advance()
    with db.session() as session:
        [claim] = make_obscalc(session).load(1)
    return claim


def entry(db, observation_id) -> Obscalc:
    with db.session() as session:
        return session.get(Obscalc, observation_id)


class TestInvalidate:
    """invalidate()"""

    def test_creates_pending_entry(self, db, observation_id, clock):
        e = entry(db, observation_id)
        assert e.state == PENDING
        assert e.last_invalidation == clock.now
        assert (e.failure_count, e.retry_at) == (0, None)

    def test_unknown_observation(self, db, make_obscalc):
        with db.session() as session:
            assert make_obscalc(session).invalidate("o-fff") is None

    def test_concurrent_first_invalidation(self, file_db, make_obscalc, clock):
        """Another transaction creates the entry between our lookup and insert."""
        with file_db.session() as session:
            program_id = ProgramEditor(session).create().program_id
            oid = GroupTreeService(session).insert_observation(program_id).observation_id

        raced = []

        def other_writer(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("INSERT INTO t_obscalc") and not raced:
                raced.append(statement)
                with file_db.session() as other:
                    make_obscalc(other).invalidate(oid)

        event.listen(file_db.engine, "before_cursor_execute", other_writer)
        try:
            with file_db.session() as session:
                e = make_obscalc(session).invalidate(oid)
                assert e.state == PENDING
        finally:
            event.remove(file_db.engine, "before_cursor_execute", other_writer)

        assert raced
        e = entry(file_db, oid)
        assert e.state == PENDING
        assert e.last_invalidation == clock.now + timedelta(microseconds=1)

    def test_ready_goes_back_to_pending(self, db, observation_id, claimed, make_obscalc, clock):
        with db.session() as session:
            make_obscalc(session).store_result(claimed, digest_result(), CalculationState.READY)
        assert entry(db, observation_id).state == READY

        clock.advance()
        with db.session() as session:
            make_obscalc(session).invalidate(observation_id)
        e = entry(db, observation_id)
        assert e.state == PENDING
        assert e.last_invalidation == clock.now
        # The previous result stays until a new one is stored
        assert e.result.digest.science.atom_count == 3

    def test_calculating_keeps_state(self, db, observation_id, claimed, make_obscalc, clock):
        """Two invalidations mid-calculation: state holds, timestamp follows."""
        for _ in range(2):
            clock.advance()
            with db.session() as session:
                make_obscalc(session).invalidate(observation_id)
        e = entry(db, observation_id)
        assert e.state == CALCULATING
        assert e.last_invalidation == clock.now

        with db.session() as session:
            stored = make_obscalc(session).store_result(
                claimed, digest_result(), CalculationState.READY
            )
            assert stored.state == PENDING

    def test_last_invalidation_strictly_increases(self, db, observation_id, make_obscalc, clock):
        before = entry(db, observation_id).last_invalidation
        with db.session() as session:
            make_obscalc(session).invalidate(observation_id)
        after = entry(db, observation_id).last_invalidation
        assert after == before + timedelta(microseconds=1)

    def test_invalidate_many(self, db, observation_id, claimed, make_obscalc, clock):
        with db.session() as session:
            entries = make_obscalc(session).invalidate_many(
                [observation_id, "o-fff", observation_id]
            )
            assert [e.observation_id for e in entries] == [observation_id]
        assert entry(db, observation_id).state == CALCULATING

    def test_invalidate_resets_retry(self, db, observation_id, claimed, make_obscalc, clock):
        with db.session() as session:
            make_obscalc(session).mark_failed(
                claimed, OdbErrorPayload.remote_service_call("ITC unavailable")
            )
        assert entry(db, observation_id).state == RETRY

        clock.advance()
        with db.session() as session:
            make_obscalc(session).invalidate(observation_id)
        e = entry(db, observation_id)
        assert (e.state, e.failure_count, e.retry_at, e.retry_error) == (
            PENDING,
            0,
            None,
            None,
        )


class TestLoad:
    """load() / load_observation() / reset()"""

    def test_oldest_invalidation_first(self, db, program_id, make_tree, make_obscalc, clock):
        with db.session() as session:
            tree = make_tree(session)
            ids = []
            for _ in range(3):
                ids.append(tree.insert_observation(program_id).observation_id)
                clock.advance()
        # Re-invalidate the oldest so it becomes the newest
        with db.session() as session:
            make_obscalc(session).invalidate(ids[0])

        with db.session() as session:
            claims = make_obscalc(session).load(2)
        assert [c.observation_id for c in claims] == ids[1:]
        assert entry(db, ids[1]).state == CALCULATING
        assert entry(db, ids[0]).state == PENDING

    def test_claim_carries_invalidation_time(self, db, observation_id, claimed):
        assert claimed.observation_id == observation_id
        assert claimed.last_invalidation == entry(db, observation_id).last_invalidation

    def test_nothing_to_claim(self, db, observation_id, claimed, make_obscalc):
        with db.session() as session:
            assert make_obscalc(session).load(5) == []
            assert make_obscalc(session).load(0) == []

    def test_load_observation(self, db, observation_id, make_obscalc):
        with db.session() as session:
            service = make_obscalc(session)
            claim = service.load_observation(observation_id)
            assert claim.observation_id == observation_id
            assert service.load_observation(observation_id) is None

    def test_reset(self, db, program_id, make_tree, make_obscalc, clock):
        with db.session() as session:
            tree = make_tree(session)
            a = tree.insert_observation(program_id).observation_id
            b = tree.insert_observation(program_id).observation_id
        with db.session() as session:
            claims = {c.observation_id: c for c in make_obscalc(session).load(2)}
        with db.session() as session:
            make_obscalc(session).mark_failed(
                claims[a], OdbErrorPayload.remote_service_call("timeout")
            )
        clock.advance(3600)
        with db.session() as session:
            [again] = make_obscalc(session).load(1)
            assert again.observation_id == a

        with db.session() as session:
            assert make_obscalc(session).reset() == 2
        assert entry(db, a).state == RETRY
        assert entry(db, a).failure_count == 1
        assert entry(db, b).state == PENDING


class TestStoreResult:
    """store_result() / mark_failed() / calculate_and_update()"""

    def test_fresh_result_is_ready(self, db, observation_id, claimed, make_obscalc, clock):
        clock.advance()
        with db.session() as session:
            make_obscalc(session).store_result(claimed, digest_result(5), CalculationState.READY)
        e = entry(db, observation_id)
        assert e.state == READY
        assert e.last_update == clock.now
        assert e.result.digest.science.atom_count == 5
        assert e.result.digest.science.offsets == [(0.0, 0.0), (0.0, 15.0)]

    def test_retry_backoff(self, db, observation_id, claimed, make_obscalc, clock):
        error = OdbErrorPayload.remote_service_call("ITC unavailable")
        with db.session() as session:
            make_obscalc(session).mark_failed(claimed, error)
        e = entry(db, observation_id)
        assert (e.state, e.failure_count) == (RETRY, 1)
        assert e.retry_at == clock.now + timedelta(seconds=60)
        assert e.retry_error == error

        # Not claimable before retry_at
        clock.advance(30)
        with db.session() as session:
            assert make_obscalc(session).load(1) == []

        clock.advance(30)
        with db.session() as session:
            [claim] = make_obscalc(session).load(1)
        assert entry(db, observation_id).state == CALCULATING

        with db.session() as session:
            make_obscalc(session).mark_failed(claim, error)
        e = entry(db, observation_id)
        assert e.failure_count == 2
        assert e.retry_at == clock.now + timedelta(seconds=120)

    def test_failure_keeps_previous_result(self, db, observation_id, claimed, make_obscalc, clock):
        with db.session() as session:
            make_obscalc(session).store_result(claimed, digest_result(), CalculationState.READY)
        clock.advance()
        with db.session() as session:
            service = make_obscalc(session)
            service.invalidate(observation_id)
            [claim] = service.load(1)
            service.mark_failed(claim, OdbErrorPayload.remote_service_call("down"))

        with db.session() as session:
            value = make_obscalc(session).select_execution_digest(observation_id)
        assert value.state is CalculationState.RETRY
        assert not value.is_current
        assert value.value.science.atom_count == 3
        assert value.error.message == "down"

    def test_stale_failure_goes_to_pending(self, db, observation_id, claimed, make_obscalc, clock):
        clock.advance()
        with db.session() as session:
            make_obscalc(session).invalidate(observation_id)
        with db.session() as session:
            make_obscalc(session).mark_failed(claimed, OdbErrorPayload.remote_service_call("x"))
        e = entry(db, observation_id)
        assert (e.state, e.failure_count, e.retry_at) == (PENDING, 0, None)

    def test_vanished_entry(self, db, observation_id, claimed, make_tree, make_obscalc):
        with db.session() as session:
            make_tree(session).delete_observation(observation_id)
        with db.session() as session:
            assert make_obscalc(session).store_result(
                claimed, digest_result(), CalculationState.READY
            ) is None

    def test_calculator_error_stored_as_data(self, db, observation_id, claimed, make_obscalc):
        class Invalid:
            def calculate(self, pending):
                return ObscalcResult.failure(
                    OdbErrorPayload(OdbErrorKind.INVALID_OBSERVATION, "no targets")
                )

        with db.session() as session:
            make_obscalc(session).calculate_and_update(claimed, Invalid())
        e = entry(db, observation_id)
        assert e.state == READY
        assert e.result.is_error
        assert e.result.error.kind is OdbErrorKind.INVALID_OBSERVATION

    def test_calculator_exception_is_retried(self, db, observation_id, claimed, make_obscalc):
        class Broken:
            def calculate(self, pending):
                raise RuntimeError("sequence generator crashed")

        with db.session() as session:
            make_obscalc(session).calculate_and_update(claimed, Broken())
        e = entry(db, observation_id)
        assert e.state == RETRY
        assert e.retry_error.message == "sequence generator crashed"

    def test_state_invariant_violation(self, db, observation_id, make_obscalc, clock):
        with db.session() as session:
            service = make_obscalc(session)
            e = service.get(observation_id)
            e.state = RETRY
            with pytest.raises(CalculationStateError):
                service._flush()
            session.rollback()


class TestSelect:
    def test_select_program(self, db, program_id, observation_id, make_obscalc):
        with db.session() as session:
            service = make_obscalc(session)
            [response] = service.select_program(program_id)
            assert response.observation_id == observation_id
            assert response.state == PENDING
            assert response.result is None
            assert service.select_many([observation_id, "o-fff"]) == [response]
            assert service.select_one("o-fff") is None
            counts = service.count_by_state()
        assert counts[CalculationState.PENDING] == 1
        assert counts[CalculationState.READY] == 0

    def test_result_dumped_as_json_data(self, db, observation_id, claimed, make_obscalc):
        with db.session() as session:
            make_obscalc(session).store_result(claimed, digest_result(), CalculationState.READY)
        with db.session() as session:
            response = make_obscalc(session).select_one(observation_id)
        assert response.result["digest"]["science"]["atom_count"] == 3
        assert response.result["digest"]["execution_state"] == "not_started"
