"""Tests for the obscalc worker.

These run against a file-backed SQLite database with one calculation thread
so each thread gets its own connection.
"""

from __future__ import annotations

import threading

import pytest

from gemini_odb.config import OdbSettings, WorkerSettings
from gemini_odb.constants import CalculationState, ExecutionState, ObsClass
from gemini_odb.models.orm import Obscalc
from gemini_odb.models.payload import (
    ExecutionDigest,
    ObscalcResult,
    OdbErrorPayload,
    SequenceDigest,
    SetupTime,
)
from gemini_odb.services.editing import ProgramEditor
from gemini_odb.services.worker import ObscalcWorker, _wakes


def digest_result() -> ObscalcResult:
    return ObscalcResult(
        digest=ExecutionDigest(
            setup=SetupTime(full_s=960.0, reacquisition_s=300.0),
            acquisition=SequenceDigest(ObsClass.ACQUISITION, 120.0, 1),
            science=SequenceDigest(ObsClass.SCIENCE, 1800.0, 2),
            execution_state=ExecutionState.NOT_STARTED,
        )
    )


class Recording:
    """Calculator returning a fixed result and recording its claims."""

    def __init__(self, result=None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.seen = []

    def calculate(self, pending):
        self.seen.append(pending.observation_id)
        if self.error is not None:
            raise self.error
        return self.result if self.result is not None else digest_result()


@pytest.fixture
def settings():
    return OdbSettings(worker=WorkerSettings(batch_size=2, parallelism=1, poll_interval=0.2))


@pytest.fixture
def observations(file_db, make_tree, clock):
    """Three pending observations, created one second apart."""
    with file_db.session() as session:
        program_id = ProgramEditor(session).create("Worker").program_id
        tree = make_tree(session)
        ids = []
        for _ in range(3):
            ids.append(tree.insert_observation(program_id).observation_id)
            clock.advance()
    return ids


def states(database, ids):
    with database.session() as session:
        return [session.get(Obscalc, oid).state for oid in ids]


class TestRunOnce:
    def test_batches_in_invalidation_order(self, file_db, observations, settings, clock):
        calculator = Recording()
        worker = ObscalcWorker(file_db, calculator, settings, clock=clock)
        assert worker.run_once() == 2
        assert calculator.seen == observations[:2]
        assert states(file_db, observations) == ["ready", "ready", "pending"]

        assert worker.run_once() == 1
        assert worker.run_once() == 0
        assert states(file_db, observations) == ["ready"] * 3

    def test_remote_error_is_retried(self, file_db, observations, settings, clock):
        failure = ObscalcResult.failure(OdbErrorPayload.remote_service_call("ITC down"))
        worker = ObscalcWorker(file_db, Recording(result=failure), settings, clock=clock)
        worker.run_once()
        with file_db.session() as session:
            entry = session.get(Obscalc, observations[0])
            assert entry.state == CalculationState.RETRY.value
            assert entry.failure_count == 1
            assert entry.retry_error.message == "ITC down"

    def test_exception_is_retried(self, file_db, observations, settings, clock):
        worker = ObscalcWorker(
            file_db, Recording(error=ValueError("bad config")), settings, clock=clock
        )
        assert worker.run_once() == 2
        assert states(file_db, observations) == ["retry", "retry", "pending"]

    def test_process_vanished_entry(self, file_db, observations, settings, make_tree, clock):
        worker = ObscalcWorker(file_db, Recording(), settings, clock=clock)
        [first, _] = worker.claim()
        with file_db.session() as session:
            make_tree(session).delete_observation(first.observation_id)
        assert worker.process(first) is None


class TestLifecycle:
    def test_startup_releases_claims(self, file_db, observations, settings, clock):
        worker = ObscalcWorker(file_db, Recording(), settings, clock=clock)
        assert len(worker.claim()) == 2
        assert states(file_db, observations)[:2] == ["calculating", "calculating"]
        assert worker.startup() == 2
        assert states(file_db, observations) == ["pending"] * 3

    def test_run_forever_drains_then_stops(self, file_db, observations, settings, clock):
        stop = threading.Event()
        calculator = Recording()
        worker = ObscalcWorker(file_db, calculator, settings, clock=clock)
        thread = threading.Thread(target=worker.run_forever, args=(stop,))
        thread.start()
        try:
            for _ in range(100):
                if len(calculator.seen) == 3:
                    break
                stop.wait(0.05)
        finally:
            stop.set()
            thread.join(timeout=5)
        assert not thread.is_alive()
        assert sorted(calculator.seen) == sorted(observations)
        assert states(file_db, observations) == ["ready"] * 3


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ("o-100,p-100,null,pending,INSERT", True),
        ("o-100,p-100,calculating,retry,UPDATE", True),
        ("o-100,p-100,pending,calculating,UPDATE", False),
        ("o-100,p-100,ready,null,DELETE", False),
        ("garbage", False),
    ],
)
def test_wake_payloads(payload, expected):
    assert _wakes(payload) is expected
