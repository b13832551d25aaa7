"""Tests for settings and identifier generation."""

from __future__ import annotations

import os
from datetime import timedelta

import pytest
from pydantic import ValidationError

from gemini_odb.config import DEFAULT_DATABASE_URL, OdbSettings, RetryPolicy
from gemini_odb.utils.ids import next_id, next_value, parse_id


class TestSettings:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for key in list(os.environ):
            if key.startswith("GEMINI_ODB_"):
                monkeypatch.delenv(key)

    def test_defaults(self):
        settings = OdbSettings.from_env()
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.worker.batch_size == 8
        assert settings.retry.base_delay == 60.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GEMINI_ODB_DATABASE_URL", "sqlite://")
        monkeypatch.setenv("GEMINI_ODB_ECHO", "true")
        monkeypatch.setenv("GEMINI_ODB_WORKER__PARALLELISM", "2")
        monkeypatch.setenv("GEMINI_ODB_RETRY__BASE_DELAY", "5")
        monkeypatch.setenv("UNRELATED", "x")
        settings = OdbSettings.from_env()
        assert settings.database_url == "sqlite://"
        assert settings.echo is True
        assert settings.worker.parallelism == 2
        assert settings.worker.poll_interval == 30.0
        assert settings.retry.base_delay == 5.0

    def test_invalid_value(self, monkeypatch):
        monkeypatch.setenv("GEMINI_ODB_WORKER__BATCH_SIZE", "0")
        with pytest.raises(ValidationError):
            OdbSettings()


@pytest.mark.parametrize(
    ("failures", "seconds"),
    [(0, 60), (1, 120), (4, 960), (5, 1920), (9, 1920)],
)
def test_retry_delay(failures, seconds):
    assert RetryPolicy().delay(failures) == timedelta(seconds=seconds)


class TestIds:
    def test_counters_per_prefix(self, db):
        with db.session() as session:
            assert next_id(session, "g") == "g-100"
            assert next_id(session, "g") == "g-101"
            assert next_id(session, "o") == "o-100"
            assert next_value(session, "x", start=1) == 1
        with db.session() as session:
            assert next_id(session, "g") == "g-102"

    def test_rollback_returns_value(self, db):
        with pytest.raises(RuntimeError):
            with db.session() as session:
                next_id(session, "g")
                raise RuntimeError("abort")
        with db.session() as session:
            assert next_id(session, "g") == "g-100"

    def test_parse_id(self):
        assert parse_id("g-1ff") == ("g", 0x1FF)
        for bad in ("G-100", "g100", "g-xyz", ""):
            with pytest.raises(ValueError):
                parse_id(bad)
