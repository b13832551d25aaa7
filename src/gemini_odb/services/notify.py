"""Transactional change notifications.

Services publish :class:`Notification` items while they edit; the bus keeps
them on the session and hands them to a broker only once the transaction
commits. A rollback drops them. Every published message is also appended to
``t_event_log`` inside the same transaction.

Payload formats:

- calculation channels: ``"<observation_id>,<program_id>,<old>,<new>,<OP>"``
  where ``old``/``new`` are states or ``null``
- edit channels: ``"<entity_id>,<program_id>,<OP>"``
"""

from __future__ import annotations

import queue
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from loguru import logger
from sqlalchemy import event, func, select

from gemini_odb.constants import Channel, Operation
from gemini_odb.models.orm import EventLog

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.orm import Session

__all__ = [
    "Broker",
    "InMemoryBroker",
    "Notification",
    "NotificationBus",
    "PostgresBroker",
]

_QUEUE_KEY = "gemini_odb.notifications"
_HOOKED_KEY = "gemini_odb.notifications_hooked"


@dataclass(frozen=True)
class Notification:
    """One message on one channel."""

    channel: Channel
    entity_id: str
    program_id: str | None
    operation: Operation
    payload: str

    @classmethod
    def calculation(
        cls,
        channel: Channel,
        observation_id: str,
        program_id: str,
        old_state: str | None,
        new_state: str | None,
        operation: Operation,
    ) -> Notification:
        payload = ",".join(
            [
                observation_id,
                program_id,
                old_state or "null",
                new_state or "null",
                operation.value,
            ]
        )
        return cls(channel, observation_id, program_id, operation, payload)

    @classmethod
    def edit(
        cls,
        channel: Channel,
        entity_id: str,
        program_id: str | None,
        operation: Operation,
    ) -> Notification:
        payload = f"{entity_id},{program_id or 'null'},{operation.value}"
        return cls(channel, entity_id, program_id, operation, payload)


class Broker(Protocol):
    """Delivers committed notifications."""

    #: Whether messages must be sent inside the committing transaction
    transactional: bool

    def send(self, session: Session, notifications: Sequence[Notification]) -> None:
        ...


class InMemoryBroker:
    """
    Process-local broker with per-subscriber queues.

    Examples
    --------
    >>> broker = InMemoryBroker()
    >>> q = broker.subscribe(Channel.OBSCALC_UPDATE)
    >>> # ... commit a transaction that invalidates an observation ...
    >>> q.get_nowait().payload
    'o-100,p-100,ready,pending,UPDATE'
    """

    transactional = False

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[Channel, list[queue.Queue]] = defaultdict(list)
        self.history: list[Notification] = []

    def subscribe(self, channel: Channel) -> queue.Queue:
        q: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers[channel].append(q)
        return q

    def unsubscribe(self, channel: Channel, q: queue.Queue) -> None:
        with self._lock:
            self._subscribers[channel].remove(q)

    def send(self, session: Session, notifications: Sequence[Notification]) -> None:
        with self._lock:
            self.history.extend(notifications)
            for n in notifications:
                for q in self._subscribers[n.channel]:
                    q.put(n)


class PostgresBroker:
    """Issues ``pg_notify`` within the committing transaction.

    PostgreSQL itself delays delivery until commit and discards the messages
    on rollback.
    """

    transactional = True

    def send(self, session: Session, notifications: Sequence[Notification]) -> None:
        for n in notifications:
            session.execute(select(func.pg_notify(n.channel.value, n.payload)))


class NotificationBus:
    """
    Collect notifications per transaction and deliver them on commit.

    Parameters
    ----------
    broker : Broker, optional
        Delivery back-end, by default a new ``InMemoryBroker``
    """

    def __init__(self, broker: Broker | None = None) -> None:
        self.broker = broker if broker is not None else InMemoryBroker()

    def publish(self, session: Session, notification: Notification) -> None:
        """Queue ``notification`` on ``session`` and log it to ``t_event_log``."""
        self._hook(session)
        session.info.setdefault(_QUEUE_KEY, []).append(notification)
        session.add(
            EventLog(
                channel=notification.channel.value,
                entity_id=notification.entity_id,
                program_id=notification.program_id,
                operation=notification.operation.value,
                payload=notification.payload,
            )
        )

    def pending(self, session: Session) -> list[Notification]:
        """Notifications queued in the current transaction."""
        return list(session.info.get(_QUEUE_KEY, []))

    def _hook(self, session: Session) -> None:
        if session.info.get(_HOOKED_KEY) is self:
            return
        session.info[_HOOKED_KEY] = self
        event.listen(session, "before_commit", self._before_commit)
        event.listen(session, "after_commit", self._after_commit)
        event.listen(session, "after_soft_rollback", self._after_soft_rollback)

    def _before_commit(self, session: Session) -> None:
        if self.broker.transactional:
            # Flush first so queued EventLog rows go out with the messages
            session.flush()
            self.broker.send(session, self.pending(session))

    def _after_commit(self, session: Session) -> None:
        notifications = session.info.pop(_QUEUE_KEY, [])
        if notifications and not self.broker.transactional:
            self.broker.send(session, notifications)
        if notifications:
            logger.debug(f"Delivered {len(notifications)} notifications")

    def _after_soft_rollback(self, session: Session, previous_transaction) -> None:
        if previous_transaction.parent is None:
            dropped = session.info.pop(_QUEUE_KEY, [])
            if dropped:
                logger.debug(f"Dropped {len(dropped)} notifications on rollback")
