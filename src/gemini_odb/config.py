"""Runtime configuration.

``OdbSettings`` is a pydantic-settings model reading ``GEMINI_ODB_*``
environment variables; nested sections use ``__`` (``GEMINI_ODB_WORKER__PARALLELISM``).

Examples
--------
>>> settings = OdbSettings.from_env()
>>> settings.retry.delay(3)
datetime.timedelta(seconds=480)
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["DEFAULT_DATABASE_URL", "OdbSettings", "RetryPolicy", "WorkerSettings"]

DEFAULT_DATABASE_URL = "sqlite:///gemini_odb.sqlite"

class RetryPolicy(BaseModel):
    """Exponential backoff for recoverable calculation failures."""

    base_delay: float = Field(60.0, gt=0, description="Delay after the first failure (s)")
    max_exponent: int = Field(5, ge=0, description="Cap on the doubling exponent")

    def delay(self, failure_count: int) -> timedelta:
        """
        Backoff after ``failure_count`` previous consecutive failures.

        Parameters
        ----------
        failure_count : int
            Failure count before the current failure is recorded

        Returns
        -------
        timedelta
            ``base_delay * 2 ** min(failure_count, max_exponent)``
        """
        exponent = min(max(failure_count, 0), self.max_exponent)
        return timedelta(seconds=self.base_delay * 2**exponent)


class WorkerSettings(BaseModel):
    """Calculation worker tuning."""

    batch_size: int = Field(8, ge=1, description="Entries claimed per poll")
    parallelism: int = Field(8, ge=1, description="Concurrent calculations")
    poll_interval: float = Field(30.0, gt=0, description="Seconds between polls")


class OdbSettings(BaseSettings):
    """Top-level settings."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_ODB_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database_url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    log_level: str = "INFO"
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls) -> OdbSettings:
        """Settings from the current environment."""
        return cls()
