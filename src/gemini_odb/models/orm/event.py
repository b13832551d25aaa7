"""Event log model: EventLog."""

from __future__ import annotations

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from gemini_odb.models.orm.base import Base
from gemini_odb.utils import Created_at, Pk


class EventLog(Base):
    """
    Append-only record of published notifications.

    Attributes
    ----------
    seq : int
        Autoincrement sequence number
    channel : str
        Notification channel (``ch_obscalc_update``, ...)
    entity_id : str
        Observation, group, target or program id the message is about
    program_id : str | None
        Owning program
    operation : str
        ``INSERT``, ``UPDATE`` or ``DELETE``
    payload : str
        Message payload exactly as published
    occurred_at : datetime
        Event timestamp
    """

    __tablename__ = "t_event_log"

    seq: Mapped[Pk]

    channel: Mapped[str] = mapped_column(String(64), index=True)

    entity_id: Mapped[str] = mapped_column(String(32), index=True)

    program_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    operation: Mapped[str] = mapped_column(String(8))

    payload: Mapped[str] = mapped_column(String(255))

    occurred_at: Mapped[Created_at]

    __table_args__ = (Index("ix_t_event_log_entity", "entity_id", "seq"),)
