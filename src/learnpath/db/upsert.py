"""Dialect-aware INSERT ... ON CONFLICT builder.

Production runs on PostgreSQL; the test suite runs on SQLite. Both dialects
support ``on_conflict_do_nothing(index_elements=...)`` and ``RETURNING``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, model: Any) -> Any:  # noqa: ANN401
    """Return an ``insert()`` construct for ``model`` that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    msg = f"ON CONFLICT is not supported for dialect {dialect!r}"
    raise NotImplementedError(msg)
