"""Dialect-aware INSERT ... ON CONFLICT DO NOTHING helpers."""

from typing import Any, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def insert_ignoring_conflict(db: Session, model: Any, values: dict[str, Any], conflict_columns: Sequence[str]):
    """Build an INSERT for ``model`` that silently skips rows violating ``conflict_columns``."""
    name = dialect_name(db)
    if name == "postgresql":
        stmt = postgresql.insert(model)
    elif name == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise NotImplementedError(f"Conflict-ignoring insert not supported on {name}")
    return stmt.values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
