"""Database layer: engines, sessions, repositories, commit-time checks.

Examples
--------
>>> from gemini_odb.db import create_database
>>> db = create_database("sqlite:///gemini_odb.sqlite")
>>> db.create_tables()
>>> with db.session() as session:
...     ...
"""

from __future__ import annotations

from gemini_odb.db.database import (
    Database,
    PostgreSQLDatabase,
    SQLiteDatabase,
    create_database,
)
from gemini_odb.db.unit_of_work import (
    OdbSession,
    mark_structure_dirty,
    structural_checks_deferred,
)

__all__ = [
    "Database",
    "OdbSession",
    "PostgreSQLDatabase",
    "SQLiteDatabase",
    "create_database",
    "mark_structure_dirty",
    "structural_checks_deferred",
]
