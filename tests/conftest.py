"""pytest configuration for gemini_odb tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from gemini_odb.db import create_database
from gemini_odb.services.editing import ProgramEditor
from gemini_odb.services.group_tree import GroupTreeService
from gemini_odb.services.invalidation import default_invalidator
from gemini_odb.services.notify import InMemoryBroker, NotificationBus
from gemini_odb.services.obscalc import ObscalcService


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def db():
    """In-memory SQLite database with all tables."""
    database = create_database("sqlite://")
    database.create_tables()
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path):
    """File-backed SQLite database, for tests that use several threads."""
    database = create_database(f"sqlite:///{tmp_path / 'odb.sqlite'}")
    database.create_tables()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def bus(broker):
    return NotificationBus(broker)


@pytest.fixture
def program_id(db):
    """A committed, empty program."""
    with db.session() as session:
        return ProgramEditor(session).create("Test program").program_id


@pytest.fixture
def make_tree(clock):
    """Factory for tree services wired to the calculation queues."""

    def factory(session, bus=None) -> GroupTreeService:
        return GroupTreeService(
            session,
            bus=bus,
            invalidator=default_invalidator(session, bus=bus, clock=clock),
        )

    return factory


@pytest.fixture
def make_obscalc(clock):
    """Factory for obscalc services on the test clock."""

    def factory(session, bus=None) -> ObscalcService:
        return ObscalcService(session, bus=bus, clock=clock)

    return factory
