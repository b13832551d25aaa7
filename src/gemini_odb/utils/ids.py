"""Prefixed identifier generation backed by a namespaced counter table.

Identifiers look like ``g-100``: a short entity prefix followed by a
lower-case hex value drawn from the counter row for that prefix.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from sqlalchemy import select

from gemini_odb.models.orm.counter import IdCounter

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

__all__ = ["DEFAULT_START", "next_id", "next_value", "parse_id"]

DEFAULT_START = 256

_ID_RE = re.compile(r"^(?P<prefix>[a-z][a-z0-9]*)-(?P<value>[0-9a-f]+)$")


def next_value(session: Session, key: str, start: int = DEFAULT_START) -> int:
    """
    Return the next integer for ``key`` and advance the counter.

    Parameters
    ----------
    session : Session
        Active session; the counter row is locked until it commits
    key : str
        Counter namespace
    start : int, optional
        First value handed out for a new namespace, by default 256

    Returns
    -------
    int
        Unique value within ``key``
    """
    counter = session.execute(
        select(IdCounter).where(IdCounter.key == key).with_for_update()
    ).scalar_one_or_none()
    if counter is None:
        counter = IdCounter(key=key, value=start)
        session.add(counter)
        session.flush()
    value = counter.value
    counter.value = value + 1
    return value


def next_id(session: Session, prefix: str) -> str:
    """
    Return a new prefixed identifier.

    Examples
    --------
    >>> next_id(session, "g")
    'g-100'
    """
    return f"{prefix}-{next_value(session, prefix):x}"


def parse_id(value: str) -> tuple[str, int]:
    """
    Split a prefixed identifier into ``(prefix, value)``.

    Raises
    ------
    ValueError
        If ``value`` is not of the form ``<prefix>-<hex>``
    """
    m = _ID_RE.match(value)
    if m is None:
        raise ValueError(f"Invalid identifier: {value!r}")
    return m["prefix"], int(m["value"], 16)
