"""Utility functions for gemini_odb."""

from __future__ import annotations

__all__ = [
    "Clock",
    "UtcDateTime",
    "after",
    "utc_now",
    "utcnow",
    # Mapped types
    "Pk",
    "IdKey",
    "Name",
    "Desc",
    "Timestamp",
    "Created_at",
    "fk",
]

from .mapped_types import (
    Created_at,
    Desc,
    IdKey,
    Name,
    Pk,
    Timestamp,
    fk,
)
from .time import Clock, UtcDateTime, after, utc_now, utcnow
