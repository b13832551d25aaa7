"""Obscalc worker: claims pending observation calculations and runs them.

The worker is the consumer side of ``t_obscalc``. One poll claims a batch in
a short transaction, then every claim is calculated and stored in its own
transaction on a thread pool, so a slow or failing calculation never holds
locks on the others.

Typical lifecycle::

    worker = ObscalcWorker(db, calculator, settings, bus=bus)
    worker.startup()            # release entries left calculating by a crash
    worker.run_forever(stop)    # until stop.set()
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from loguru import logger

from gemini_odb.config import OdbSettings
from gemini_odb.constants import CalculationState, Channel
from gemini_odb.services.obscalc import ObscalcService

if TYPE_CHECKING:
    from gemini_odb.db.database import Database
    from gemini_odb.models.schemas import PendingCalc
    from gemini_odb.services.calc_queue import Calculator
    from gemini_odb.services.notify import NotificationBus
    from gemini_odb.utils.time import Clock

__all__ = ["ObscalcWorker"]

# States that mean there is new work to claim
_WAKE_STATES = frozenset({CalculationState.PENDING.value, CalculationState.RETRY.value})


class ObscalcWorker:
    """
    Background consumer of the obscalc queue.

    Parameters
    ----------
    database : Database
        Database whose sessions the worker opens
    calculator : Calculator
        External ITC/sequence calculation
    settings : OdbSettings, optional
        Batch size, parallelism, poll interval and retry policy
    bus : NotificationBus, optional
        Bus for the worker's own state changes; if its broker can be
        subscribed to, ``ch_obscalc_update`` messages wake the worker early
    clock : Clock, optional
        Source of "now" for the queue
    """

    def __init__(
        self,
        database: Database,
        calculator: Calculator,
        settings: OdbSettings | None = None,
        bus: NotificationBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.database = database
        self.calculator = calculator
        self.settings = settings or OdbSettings()
        self.bus = bus
        self.clock = clock

    def _service(self, session) -> ObscalcService:
        return ObscalcService(
            session,
            bus=self.bus,
            clock=self.clock,
            retry=self.settings.retry,
        )

    def startup(self) -> int:
        """Release entries left ``calculating`` by a previous run."""
        with self.database.session() as session:
            n = self._service(session).reset()
        logger.info(f"Obscalc worker started, {n} entries released")
        return n

    def claim(self) -> list[PendingCalc]:
        """Claim one batch in its own transaction."""
        with self.database.session() as session:
            return self._service(session).load(self.settings.worker.batch_size)

    def process(self, pending: PendingCalc) -> CalculationState | None:
        """
        Calculate and store one claim.

        Returns
        -------
        CalculationState | None
            State after storing, or None if the entry disappeared meanwhile
        """
        with self.database.session() as session:
            entry = self._service(session).calculate_and_update(pending, self.calculator)
            return None if entry is None else entry.calculation_state

    def run_once(self) -> int:
        """
        Claim and process one batch.

        Returns
        -------
        int
            Number of entries processed
        """
        claims = self.claim()
        if not claims:
            return 0
        parallelism = min(self.settings.worker.parallelism, len(claims))
        with ThreadPoolExecutor(
            max_workers=parallelism, thread_name_prefix="obscalc"
        ) as pool:
            states = list(pool.map(self._process_logged, claims))
        ready = sum(1 for s in states if s is CalculationState.READY)
        logger.info(f"Processed {len(claims)} obscalc entries, {ready} ready")
        return len(claims)

    def run_forever(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set."""
        wakeup = self._subscribe()
        try:
            while not stop_event.is_set():
                if self.run_once():
                    continue
                self._wait(wakeup, stop_event)
        finally:
            if wakeup is not None:
                self.bus.broker.unsubscribe(Channel.OBSCALC_UPDATE, wakeup)
        logger.info("Obscalc worker stopped")

    def _process_logged(self, pending: PendingCalc) -> CalculationState | None:
        try:
            return self.process(pending)
        except Exception:
            # The claim stays calculating until the next startup() reset
            logger.exception(f"Storing obscalc result for {pending.observation_id} failed")
            return None

    def _subscribe(self) -> queue.Queue | None:
        broker = None if self.bus is None else self.bus.broker
        if broker is None or not hasattr(broker, "subscribe"):
            return None
        return broker.subscribe(Channel.OBSCALC_UPDATE)

    def _wait(self, wakeup: queue.Queue | None, stop_event: threading.Event) -> None:
        deadline = time.monotonic() + self.settings.worker.poll_interval
        while not stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            step = min(remaining, 0.1)
            if wakeup is None:
                stop_event.wait(step)
                continue
            try:
                notification = wakeup.get(timeout=step)
            except queue.Empty:
                continue
            if _wakes(notification.payload):
                return


def _wakes(payload: str) -> bool:
    """Whether a ``ch_obscalc_update`` payload announces claimable work."""
    fields = payload.split(",")
    return len(fields) == 5 and fields[3] in _WAKE_STATES
