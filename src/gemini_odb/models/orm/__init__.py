"""SQLAlchemy 2.0 ORM models for gemini_odb.

Split into logical modules:
- base.py - Base class and naming convention
- program.py - Program and the group tree nodes (Program, Group)
- observation.py - Observations and asterism links (Observation, AsterismTarget)
- target.py - Targets (Target)
- mode.py - Observing mode and exposure time mode rows
- calculation.py - Derived-calculation entries (Obscalc, BlindOffsetCalc)
- counter.py - Identifier counters (IdCounter)
- event.py - Notification log (EventLog)
"""

from __future__ import annotations

from gemini_odb.models.orm.base import Base
from gemini_odb.models.orm.calculation import (
    BlindOffsetCalc,
    CalculationMeta,
    Obscalc,
)
from gemini_odb.models.orm.counter import IdCounter
from gemini_odb.models.orm.event import EventLog
from gemini_odb.models.orm.mode import (
    ExposureTimeMode,
    Flamingos2LongSlit,
    GmosImaging,
    GmosLongSlit,
)
from gemini_odb.models.orm.observation import AsterismTarget, Observation
from gemini_odb.models.orm.program import Group, Program
from gemini_odb.models.orm.target import Target

__all__ = [
    "AsterismTarget",
    "Base",
    "BlindOffsetCalc",
    "CalculationMeta",
    "EventLog",
    "ExposureTimeMode",
    "Flamingos2LongSlit",
    "GmosImaging",
    "GmosLongSlit",
    "Group",
    "IdCounter",
    "Obscalc",
    "Observation",
    "Program",
    "Target",
]
