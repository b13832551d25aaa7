"""Time utility functions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import sqlalchemy as sa
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression

__all__ = ["Clock", "UtcDateTime", "after", "utc_now", "utcnow"]

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """
    Return current UTC time with timezone awareness.

    This is the default clock of the calculation queues.

    Returns
    -------
    datetime
        Current UTC timestamp with tzinfo=timezone.utc
    """
    return datetime.now(tz=timezone.utc)


def after(previous: datetime | None, now: datetime) -> datetime:
    """
    Return ``now`` if it is later than ``previous``, else one microsecond past it.

    Parameters
    ----------
    previous : datetime | None
        Last recorded timestamp
    now : datetime
        Clock reading

    Returns
    -------
    datetime
        A timestamp strictly greater than ``previous``
    """
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class UtcDateTime(sa.types.TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops tzinfo on the way back; naive values coming out of the
    database are interpreted as UTC so that comparisons with ``utc_now()``
    never mix aware and naive datetimes.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime is not allowed: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class utcnow(expression.FunctionElement):  # noqa: N801
    """SQL function element for database-generated UTC timestamps.

    Examples
    --------
    >>> created_at: Mapped[datetime] = mapped_column(
    ...     UtcDateTime(),
    ...     server_default=utcnow()
    ... )
    """

    type = sa.DateTime()
    inherit_cache = True


@compiles(utcnow, "postgresql")
def pg_utcnow(_element, _compiler, **_kw):
    """PostgreSQL: TIMEZONE('utc', CURRENT_TIMESTAMP)."""
    return "TIMEZONE('utc', CURRENT_TIMESTAMP)"


@compiles(utcnow, "sqlite")
@compiles(utcnow)
def default_utcnow(_element, _compiler, **_kw):
    """SQLite and others: CURRENT_TIMESTAMP."""
    return "CURRENT_TIMESTAMP"
