"""Constants and enumerations for gemini_odb."""

from __future__ import annotations

from enum import Enum

__all__ = [
    "CalculationState",
    "CalibrationRole",
    "Change",
    "Channel",
    "EtmRole",
    "ExecutionState",
    "ExistenceState",
    "ExposureTimeModeType",
    "GmosSite",
    "ObsClass",
    "ObservingModeType",
    "OdbErrorKind",
    "Operation",
    "TargetDisposition",
    "ID_PREFIX",
    "SENTINEL_INDEX",
]


class CalculationState(str, Enum):
    """State of a derived-calculation entry (obscalc, blind offset)."""

    PENDING = "pending"
    RETRY = "retry"
    CALCULATING = "calculating"
    READY = "ready"


class ExistenceState(str, Enum):
    """Soft-delete flag."""

    PRESENT = "present"
    DELETED = "deleted"


class TargetDisposition(str, Enum):
    """What a target is used for."""

    SCIENCE = "science"
    CALIBRATION = "calibration"
    BLIND_OFFSET = "blind_offset"


class CalibrationRole(str, Enum):
    """Calibration roles for observations and system groups."""

    TWILIGHT = "twilight"
    PHOTOMETRIC = "photometric"
    SPECTROPHOTOMETRIC = "spectrophotometric"
    TELLURIC = "telluric"


class ObservingModeType(str, Enum):
    """Observing mode configuration tables."""

    GMOS_NORTH_LONG_SLIT = "gmos_north_long_slit"
    GMOS_SOUTH_LONG_SLIT = "gmos_south_long_slit"
    FLAMINGOS_2_LONG_SLIT = "flamingos_2_long_slit"
    GMOS_NORTH_IMAGING = "gmos_north_imaging"
    GMOS_SOUTH_IMAGING = "gmos_south_imaging"


class GmosSite(str, Enum):
    """GMOS instrument site."""

    NORTH = "north"
    SOUTH = "south"


class EtmRole(str, Enum):
    """Exposure time mode role."""

    REQUIREMENT = "requirement"
    SCIENCE = "science"
    ACQUISITION = "acquisition"


class ExposureTimeModeType(str, Enum):
    """Exposure time mode kind."""

    SIGNAL_TO_NOISE = "signal_to_noise"
    TIME_AND_COUNT = "time_and_count"


class ObsClass(str, Enum):
    """Observe class of a sequence."""

    SCIENCE = "science"
    PROGRAM_CAL = "program_cal"
    PARTNER_CAL = "partner_cal"
    ACQUISITION = "acquisition"
    ACQUISITION_CAL = "acquisition_cal"
    DAY_CAL = "day_cal"


class ExecutionState(str, Enum):
    """Execution-state summary of a sequence."""

    NOT_DEFINED = "not_defined"
    NOT_STARTED = "not_started"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    DECLARED_COMPLETE = "declared_complete"


class OdbErrorKind(str, Enum):
    """Kinds of calculation error stored as data."""

    REMOTE_SERVICE_CALL = "remote_service_call"
    SEQUENCE_UNAVAILABLE = "sequence_unavailable"
    UPDATE_FAILED = "update_failed"
    INVALID_OBSERVATION = "invalid_observation"


class Operation(str, Enum):
    """Row operation reported in notifications."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Channel(str, Enum):
    """Notification channels."""

    OBSCALC_UPDATE = "ch_obscalc_update"
    BLIND_OFFSET_UPDATE = "ch_blind_offset_update"
    GROUP_EDIT = "ch_group_edit"
    OBSERVATION_EDIT = "ch_observation_edit"
    TARGET_EDIT = "ch_target_edit"
    PROGRAM_EDIT = "ch_program_edit"


class Change(str, Enum):
    """Kinds of upstream edit that can invalidate a derived calculation."""

    OBSERVATION = "observation"
    ASTERISM = "asterism"
    OBSERVING_MODE = "observing_mode"
    EXPOSURE_TIME_MODE = "exposure_time_mode"
    TARGET = "target"
    TARGET_TRACKING = "target_tracking"
    OBSERVATION_TIME = "observation_time"
    BLIND_OFFSET = "blind_offset"


# Id prefixes for the namespaced counter
ID_PREFIX = {
    "program": "p",
    "group": "g",
    "observation": "o",
    "target": "t",
}

# Parking index used while a node is in transit between parents
SENTINEL_INDEX = -1
