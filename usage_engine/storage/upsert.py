"""Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING`` helper."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from usage_engine.core.exceptions import EngineError

_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def insert_ignore(
    session: Session,
    model: Any,
    values: Mapping[str, Any],
    conflict_columns: Sequence[str],
) -> bool:
    """Insert a row unless one already exists for ``conflict_columns``.

    Returns ``True`` when this call created the row. The database enforces
    the uniqueness, so two writers racing on the same key see exactly one
    ``True``.
    """
    dialect = session.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise EngineError(f"Unsupported database dialect: {dialect}")
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = session.execute(stmt)
    return result.rowcount == 1


__all__ = ["insert_ignore"]
