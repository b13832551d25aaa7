"""SQLAlchemy mapped type helpers for consistent column definitions."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import mapped_column

from gemini_odb.utils.time import UtcDateTime, utcnow

__all__ = [
    "Pk",
    "IdKey",
    "Name",
    "Desc",
    "Timestamp",
    "Created_at",
    "fk",
]

# Primary Key Types
Pk = Annotated[
    int,
    mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="Primary key",
    ),
]

# Prefixed hex identifiers such as ``g-1a0``
IdKey = Annotated[
    str,
    mapped_column(
        String(32),
        primary_key=True,
        comment="Prefixed identifier",
    ),
]

# String Field Types
Name = Annotated[
    str | None,
    mapped_column(
        String(255),
        nullable=True,
        comment="Display name",
    ),
]

Desc = Annotated[
    str | None,
    mapped_column(
        Text,
        nullable=True,
        comment="Description",
    ),
]

# Timestamp Types
Timestamp = Annotated[
    datetime | None,
    mapped_column(
        UtcDateTime(),
        nullable=True,
    ),
]

Created_at = Annotated[
    datetime,
    mapped_column(
        UtcDateTime(),
        server_default=utcnow(),
        index=True,
        comment="Creation timestamp",
    ),
]


# Foreign Key Helper
def fk(
    target: str,
    ondelete: str | None = None,
    **kwargs,
):
    """
    Create a foreign key column to a prefixed-id primary key.

    Parameters
    ----------
    target : str
        Target column as ``"table.column"``
    ondelete : str | None, optional
        ``ON DELETE`` action, e.g. ``"CASCADE"``
    **kwargs
        Additional mapped_column arguments

    Returns
    -------
    mapped_column
        Configured foreign key column (string id)

    Examples
    --------
    >>> program_id: Mapped[str] = fk("t_program.program_id", index=True)
    """
    kwargs.setdefault("comment", f"Foreign key to {target}")

    return mapped_column(
        String(32),
        ForeignKey(target, ondelete=ondelete),
        **kwargs,
    )
