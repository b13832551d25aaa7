"""Mutation paths for the inputs of derived calculations.

Each editor changes one kind of upstream data, publishes an edit
notification and reports the change to the :class:`Invalidator`. Nothing is
reported when an update leaves every value as it was.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger
from sqlalchemy import delete, select

from gemini_odb.constants import (
    ID_PREFIX,
    Change,
    Channel,
    EtmRole,
    ExistenceState,
    ExposureTimeModeType,
    GmosSite,
    ObservingModeType,
    Operation,
    TargetDisposition,
)
from gemini_odb.db.repository import (
    ObservationRepository,
    ProgramRepository,
    TargetRepository,
)
from gemini_odb.errors import AsterismError, TargetNotFoundError
from gemini_odb.models.orm import (
    AsterismTarget,
    ExposureTimeMode,
    Flamingos2LongSlit,
    GmosImaging,
    GmosLongSlit,
    Observation,
    Program,
    Target,
)
from gemini_odb.services.notify import Notification
from gemini_odb.utils.ids import next_id

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.orm import Session

    from gemini_odb.services.invalidation import Invalidator
    from gemini_odb.services.notify import NotificationBus

__all__ = [
    "AsterismEditor",
    "ExposureTimeModeEditor",
    "ObservationEditor",
    "ObservingModeEditor",
    "ProgramEditor",
    "TargetEditor",
]

# Observation fields that feed the blind offset search rather than the ITC
_TIME_FIELDS = frozenset({"observation_time"})

_TRACKING_FIELDS = frozenset(
    {"ra", "dec", "epoch", "pm_ra", "pm_dec", "radial_velocity", "parallax"}
)


class _Editor:
    """Shared wiring: session, notification bus and invalidator."""

    def __init__(
        self,
        session: Session,
        bus: NotificationBus | None = None,
        invalidator: Invalidator | None = None,
    ) -> None:
        self.session = session
        self.bus = bus
        self.invalidator = invalidator
        self.observations = ObservationRepository(session)
        self.targets = TargetRepository(session)

    def _edited(
        self,
        channel: Channel,
        entity_id: str,
        program_id: str | None,
        operation: Operation = Operation.UPDATE,
    ) -> None:
        if self.bus is not None:
            self.bus.publish(
                self.session,
                Notification.edit(channel, entity_id, program_id, operation),
            )

    def _changed(self, observation_id: str, change: Change) -> None:
        if self.invalidator is not None:
            self.invalidator.observation_changed(observation_id, change)

    def _observation(self, observation_id: str) -> Observation:
        return self.observations.require(observation_id)


def _apply(obj: Any, fields: dict[str, Any]) -> set[str]:
    """Set attributes on ``obj``; return the names whose value changed."""
    changed = set()
    for name, value in fields.items():
        if not hasattr(type(obj), name):
            raise AttributeError(f"{type(obj).__name__} has no field {name!r}")
        if getattr(obj, name) != value:
            setattr(obj, name, value)
            changed.add(name)
    return changed


class ProgramEditor(_Editor):
    """Create and rename programs."""

    def create(self, name: str | None = None) -> Program:
        program = Program(
            program_id=next_id(self.session, ID_PREFIX["program"]),
            name=name,
        )
        ProgramRepository(self.session).create(program)
        logger.info(f"Created program {program.program_id}")
        self._edited(Channel.PROGRAM_EDIT, program.program_id, program.program_id, Operation.INSERT)
        return program

    def rename(self, program_id: str, name: str | None) -> Program:
        program = ProgramRepository(self.session).require(program_id)
        if program.name != name:
            program.name = name
            self.session.flush()
            self._edited(Channel.PROGRAM_EDIT, program_id, program_id)
        return program


class ObservationEditor(_Editor):
    """Edit the scalar properties of an observation."""

    def update(self, observation_id: str, **fields: Any) -> set[str]:
        """
        Update observation fields.

        Structural fields (group, index, existence) belong to
        :class:`~gemini_odb.services.group_tree.GroupTreeService` and are
        rejected here.

        Returns
        -------
        set[str]
            Names of the fields whose value actually changed

        Raises
        ------
        ObservationNotFoundError
            If the observation does not exist
        ValueError
            If a structural field is passed
        """
        structural = set(fields) & {"group_id", "group_index", "existence", "program_id"}
        if structural:
            raise ValueError(f"Use the group tree to change {sorted(structural)}")
        observation = self._observation(observation_id)
        changed = _apply(observation, fields)
        if not changed:
            return changed
        self.session.flush()
        self._edited(Channel.OBSERVATION_EDIT, observation_id, observation.program_id)
        if changed & _TIME_FIELDS:
            self._changed(observation_id, Change.OBSERVATION_TIME)
        if changed - _TIME_FIELDS:
            self._changed(observation_id, Change.OBSERVATION)
        logger.debug(f"Updated {observation_id}: {sorted(changed)}")
        return changed


class AsterismEditor(_Editor):
    """Maintain the science targets of observations."""

    def targets_of(self, observation_id: str) -> list[str]:
        return list(
            self.session.execute(
                select(AsterismTarget.target_id)
                .where(AsterismTarget.observation_id == observation_id)
                .order_by(AsterismTarget.target_id)
            ).scalars()
        )

    def _asterism_target(self, observation: Observation, target_id: str) -> Target:
        target = self.targets.get(target_id)
        if target is None or target.program_id != observation.program_id:
            raise TargetNotFoundError(target_id)
        if target.disposition == TargetDisposition.BLIND_OFFSET.value:
            raise AsterismError(
                f"Target {target_id} is a blind offset target and cannot be "
                f"part of the asterism of {observation.observation_id}."
            )
        return target

    def add(self, observation_id: str, target_ids: Iterable[str]) -> list[str]:
        """
        Add targets to an observation's asterism.

        Returns
        -------
        list[str]
            Targets that were not already present

        Raises
        ------
        TargetNotFoundError
            If a target is not part of the observation's program
        AsterismError
            If a target has the ``blind_offset`` disposition
        """
        observation = self._observation(observation_id)
        current = set(self.targets_of(observation_id))
        added = []
        for target_id in dict.fromkeys(target_ids):
            self._asterism_target(observation, target_id)
            if target_id in current:
                continue
            self.session.add(
                AsterismTarget(
                    program_id=observation.program_id,
                    observation_id=observation_id,
                    target_id=target_id,
                )
            )
            added.append(target_id)
        if added:
            self.session.flush()
            self._asterism_changed(observation)
        return added

    def remove(self, observation_id: str, target_ids: Iterable[str]) -> int:
        observation = self._observation(observation_id)
        result = self.session.execute(
            delete(AsterismTarget).where(
                AsterismTarget.observation_id == observation_id,
                AsterismTarget.target_id.in_(list(target_ids)),
            )
        )
        if result.rowcount:
            self._asterism_changed(observation)
        return result.rowcount

    def replace(self, observation_id: str, target_ids: Iterable[str]) -> list[str]:
        """Set the asterism to exactly ``target_ids``."""
        observation = self._observation(observation_id)
        wanted = list(dict.fromkeys(target_ids))
        for target_id in wanted:
            self._asterism_target(observation, target_id)
        current = self.targets_of(observation_id)
        if sorted(wanted) == current:
            return current
        self.session.execute(
            delete(AsterismTarget).where(AsterismTarget.observation_id == observation_id)
        )
        self.session.add_all(
            AsterismTarget(
                program_id=observation.program_id,
                observation_id=observation_id,
                target_id=target_id,
            )
            for target_id in wanted
        )
        self.session.flush()
        self._asterism_changed(observation)
        return sorted(wanted)

    def _asterism_changed(self, observation: Observation) -> None:
        self.session.expire(observation, ["asterism"])
        self._edited(Channel.OBSERVATION_EDIT, observation.observation_id, observation.program_id)
        self._changed(observation.observation_id, Change.ASTERISM)


class ObservingModeEditor(_Editor):
    """Create, replace or clear the observing mode of an observation."""

    def set_gmos_long_slit(
        self,
        observation_id: str,
        grating: str,
        fpu: str,
        central_wavelength_nm: float,
        site: GmosSite = GmosSite.NORTH,
        filter: str | None = None,
        x_bin: int | None = None,
        y_bin: int | None = None,
    ) -> GmosLongSlit:
        mode = GmosLongSlit(
            observation_id=observation_id,
            site=site.value,
            grating=grating,
            filter=filter,
            fpu=fpu,
            central_wavelength_nm=central_wavelength_nm,
            x_bin=x_bin,
            y_bin=y_bin,
        )
        mode_type = (
            ObservingModeType.GMOS_NORTH_LONG_SLIT
            if site is GmosSite.NORTH
            else ObservingModeType.GMOS_SOUTH_LONG_SLIT
        )
        return self._replace(observation_id, mode, mode_type)

    def set_flamingos2_long_slit(
        self,
        observation_id: str,
        disperser: str,
        filter: str,
        fpu: str,
        read_mode: str | None = None,
    ) -> Flamingos2LongSlit:
        mode = Flamingos2LongSlit(
            observation_id=observation_id,
            disperser=disperser,
            filter=filter,
            fpu=fpu,
            read_mode=read_mode,
        )
        return self._replace(observation_id, mode, ObservingModeType.FLAMINGOS_2_LONG_SLIT)

    def set_gmos_imaging(
        self,
        observation_id: str,
        filters: Iterable[str],
        site: GmosSite = GmosSite.NORTH,
        bin: int | None = None,
    ) -> GmosImaging:
        mode = GmosImaging(
            observation_id=observation_id,
            site=site.value,
            filters=",".join(filters),
            bin=bin,
        )
        mode_type = (
            ObservingModeType.GMOS_NORTH_IMAGING
            if site is GmosSite.NORTH
            else ObservingModeType.GMOS_SOUTH_IMAGING
        )
        return self._replace(observation_id, mode, mode_type)

    def clear(self, observation_id: str) -> bool:
        """Remove the observing mode; returns False if there was none."""
        observation = self._observation(observation_id)
        if observation.observing_mode_type is None:
            return False
        self._drop_modes(observation)
        observation.observing_mode_type = None
        self.session.flush()
        self._mode_changed(observation)
        return True

    def _drop_modes(self, observation: Observation) -> None:
        observation.gmos_long_slit = None
        observation.flamingos2_long_slit = None
        observation.gmos_imaging = None
        self.session.flush()

    def _replace(self, observation_id: str, mode: Any, mode_type: ObservingModeType) -> Any:
        observation = self._observation(observation_id)
        self._drop_modes(observation)
        if mode_type in (
            ObservingModeType.GMOS_NORTH_LONG_SLIT,
            ObservingModeType.GMOS_SOUTH_LONG_SLIT,
        ):
            observation.gmos_long_slit = mode
        elif mode_type is ObservingModeType.FLAMINGOS_2_LONG_SLIT:
            observation.flamingos2_long_slit = mode
        else:
            observation.gmos_imaging = mode
        observation.observing_mode_type = mode_type.value
        self.session.flush()
        self._mode_changed(observation)
        logger.debug(f"{observation_id} observing mode set to {mode_type.value}")
        return mode

    def _mode_changed(self, observation: Observation) -> None:
        self._edited(Channel.OBSERVATION_EDIT, observation.observation_id, observation.program_id)
        self._changed(observation.observation_id, Change.OBSERVING_MODE)


class ExposureTimeModeEditor(_Editor):
    """One exposure time mode per (observation, role)."""

    def get(self, observation_id: str, role: EtmRole) -> ExposureTimeMode | None:
        return self.session.scalar(
            select(ExposureTimeMode).where(
                ExposureTimeMode.observation_id == observation_id,
                ExposureTimeMode.role == role.value,
            )
        )

    def upsert(
        self,
        observation_id: str,
        role: EtmRole,
        wavelength_nm: float,
        signal_to_noise: float | None = None,
        exposure_time_s: float | None = None,
        exposure_count: int | None = None,
    ) -> ExposureTimeMode:
        """
        Create or update the exposure time mode of ``role``.

        Passing ``signal_to_noise`` selects the signal-to-noise mode,
        otherwise ``exposure_time_s`` and ``exposure_count`` are required.

        Raises
        ------
        ValueError
            If neither mode is fully specified
        """
        if signal_to_noise is not None:
            mode = ExposureTimeModeType.SIGNAL_TO_NOISE
            exposure_time_s = exposure_count = None
        elif exposure_time_s is not None and exposure_count is not None:
            mode = ExposureTimeModeType.TIME_AND_COUNT
        else:
            raise ValueError(
                "Exposure time mode needs signal_to_noise, or exposure_time_s "
                "and exposure_count"
            )
        observation = self._observation(observation_id)
        fields = {
            "mode": mode.value,
            "wavelength_nm": wavelength_nm,
            "signal_to_noise": signal_to_noise,
            "exposure_time_s": exposure_time_s,
            "exposure_count": exposure_count,
        }
        etm = self.get(observation_id, role)
        if etm is None:
            etm = ExposureTimeMode(observation_id=observation_id, role=role.value, **fields)
            self.session.add(etm)
            changed = True
        else:
            changed = bool(_apply(etm, fields))
        if changed:
            self.session.flush()
            self._etm_changed(observation)
        return etm

    def delete(self, observation_id: str, role: EtmRole) -> bool:
        observation = self._observation(observation_id)
        etm = self.get(observation_id, role)
        if etm is None:
            return False
        self.session.delete(etm)
        self.session.flush()
        self._etm_changed(observation)
        return True

    def _etm_changed(self, observation: Observation) -> None:
        self.session.expire(observation, ["exposure_time_modes"])
        self._edited(Channel.OBSERVATION_EDIT, observation.observation_id, observation.program_id)
        self._changed(observation.observation_id, Change.EXPOSURE_TIME_MODE)


class TargetEditor(_Editor):
    """Create and edit targets; changes reach every observation using them."""

    def create(
        self,
        program_id: str,
        name: str | None = None,
        disposition: TargetDisposition = TargetDisposition.SCIENCE,
        **fields: Any,
    ) -> Target:
        ProgramRepository(self.session).require(program_id)
        target = Target(
            target_id=next_id(self.session, ID_PREFIX["target"]),
            program_id=program_id,
            name=name,
            disposition=disposition.value,
            existence=ExistenceState.PRESENT.value,
            **fields,
        )
        self.targets.create(target)
        logger.info(f"Created target {target.target_id} in {program_id}")
        self._edited(Channel.TARGET_EDIT, target.target_id, program_id, Operation.INSERT)
        return target

    def update(self, target_id: str, **fields: Any) -> list[str]:
        """
        Update target fields and invalidate the observations using it.

        Coordinate and motion fields report ``target_tracking``; anything
        else reports ``target``.

        Returns
        -------
        list[str]
            Observations invalidated, sorted
        """
        target = self.targets.require(target_id)
        if "disposition" in fields:
            fields["disposition"] = TargetDisposition(fields["disposition"]).value
        changed = _apply(target, fields)
        if not changed:
            return []
        self.session.flush()
        self._edited(Channel.TARGET_EDIT, target_id, target.program_id)
        if self.invalidator is None:
            return []
        affected: set[str] = set()
        if changed & _TRACKING_FIELDS:
            affected.update(self.invalidator.target_changed(target_id, Change.TARGET_TRACKING))
        if changed - _TRACKING_FIELDS:
            affected.update(self.invalidator.target_changed(target_id, Change.TARGET))
        logger.debug(f"Target {target_id} {sorted(changed)} touched {len(affected)} observations")
        return sorted(affected)
