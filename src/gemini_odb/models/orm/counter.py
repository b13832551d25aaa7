"""Identifier counter model: IdCounter."""

from __future__ import annotations

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from gemini_odb.models.orm.base import Base


class IdCounter(Base):
    """Namespaced monotonically increasing counter."""

    __tablename__ = "t_id_counter"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)

    value: Mapped[int] = mapped_column(BigInteger)
