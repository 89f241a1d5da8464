"""Dialect-aware INSERT ... ON CONFLICT helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, table: Any) -> Any:
    """Return an ``insert()`` construct supporting ``on_conflict_*`` for the session's dialect."""
    dialect = db.bind.dialect.name if db.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)
