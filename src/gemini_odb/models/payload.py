"""Typed payloads of derived calculations.

Dataclass models for the results stored in the calculation tables' JSON
columns through adaptix's AdaptixJSON. Errors from the upstream services are
part of the payload (``OdbErrorPayload``), never raised past the worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from adaptix import Retort
from adaptix.integrations.sqlalchemy import AdaptixJSON
from sqlalchemy.types import JSON

from gemini_odb.constants import ExecutionState, ObsClass, OdbErrorKind

# Global retort for adaptix conversions across all ORM models
_retort = Retort()

# AdaptixJSON defaults to JSONB on PostgreSQL; plain JSON keeps SQLite and
# PostgreSQL schemas identical
_json_type = JSON()


def adaptix_json_type(payload_type) -> AdaptixJSON:
    """
    Create an AdaptixJSON column type for a payload dataclass.

    Parameters
    ----------
    payload_type : type[T]
        The payload dataclass type (e.g., ObscalcResult)

    Returns
    -------
    AdaptixJSON[T]
        Configured AdaptixJSON type for SQLAlchemy mapped_column()

    Examples
    --------
    >>> result: Mapped[ObscalcResult | None] = mapped_column(
    ...     adaptix_json_type(ObscalcResult),
    ...     nullable=True,
    ... )
    """
    return AdaptixJSON(_retort, payload_type, impl=_json_type)


def dump_payload(payload) -> dict:
    """Dump a payload dataclass to the JSON data stored in its column."""
    return _retort.dump(payload)


__all__ = [
    "adaptix_json_type",
    "dump_payload",
    "BlindOffsetResult",
    "ExecutionDigest",
    "ItcResult",
    "ObscalcResult",
    "OdbErrorPayload",
    "SequenceDigest",
    "SetupTime",
    "SignalToNoiseAt",
    "TargetItcResult",
]


@dataclass
class OdbErrorPayload:
    """Error stored as data in place of a calculation result.

    ``remote_service_call`` is the only recoverable kind: the entry goes to
    ``retry`` instead of ``ready``.
    """

    kind: OdbErrorKind
    message: str | None = None
    detail: str | None = None

    @property
    def is_recoverable(self) -> bool:
        return self.kind is OdbErrorKind.REMOTE_SERVICE_CALL

    @classmethod
    def remote_service_call(cls, message: str, detail: str | None = None) -> OdbErrorPayload:
        return cls(OdbErrorKind.REMOTE_SERVICE_CALL, message, detail)

    @classmethod
    def update_failed(cls, message: str, detail: str | None = None) -> OdbErrorPayload:
        return cls(OdbErrorKind.UPDATE_FAILED, message, detail)


@dataclass
class SignalToNoiseAt:
    """Signal-to-noise at a wavelength, for one exposure and in total."""

    wavelength_nm: float
    single: float
    total: float


@dataclass
class TargetItcResult:
    """Integration time for one asterism target."""

    target_id: str
    exposure_time_s: float
    exposure_count: int
    signal_to_noise: SignalToNoiseAt | None = None


@dataclass
class ItcResult:
    """Integration-time results for acquisition and science.

    The asterism result is the target with the longest total science time.
    """

    acquisition: list[TargetItcResult] = field(default_factory=list)
    science: list[TargetItcResult] = field(default_factory=list)

    @property
    def selected(self) -> TargetItcResult | None:
        if not self.science:
            return None
        return max(self.science, key=lambda r: r.exposure_time_s * r.exposure_count)


@dataclass
class SetupTime:
    full_s: float
    reacquisition_s: float


@dataclass
class SequenceDigest:
    """Summary of one generated sequence."""

    obs_class: ObsClass
    time_estimate_s: float
    atom_count: int
    offsets: list[tuple[float, float]] = field(default_factory=list)


@dataclass
class ExecutionDigest:
    """Setup plus acquisition and science sequence summaries."""

    setup: SetupTime
    acquisition: SequenceDigest
    science: SequenceDigest
    execution_state: ExecutionState = ExecutionState.NOT_STARTED

    @property
    def time_estimate_s(self) -> float:
        return (
            self.setup.full_s
            + self.acquisition.time_estimate_s
            + self.science.time_estimate_s
        )


@dataclass
class ObscalcResult:
    """Result of an observation calculation.

    Exactly one of the success fields (``itc``/``digest``) or ``error`` is
    meaningful; an ``error`` result is still a stored, queryable result.
    """

    itc: ItcResult | None = None
    digest: ExecutionDigest | None = None
    error: OdbErrorPayload | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def failure(cls, error: OdbErrorPayload) -> ObscalcResult:
        return cls(error=error)


@dataclass
class BlindOffsetResult:
    """Chosen blind-offset star, or the reason none was chosen."""

    target_id: str | None = None
    ra_deg: float | None = None
    dec_deg: float | None = None
    error: OdbErrorPayload | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None
