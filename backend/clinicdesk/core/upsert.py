from __future__ import annotations

from typing import Any, Iterable, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Result
from sqlalchemy.orm import Session


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Upsert is not supported on dialect {name!r}")


def upsert(
    db: Session,
    model: Any,
    values: dict[str, Any],
    *,
    conflict_columns: Sequence[str],
    update_columns: Iterable[str] | None = None,
    returning: Sequence[Any] | None = None,
) -> Result:
    """
    Single-statement ``INSERT ... ON CONFLICT (natural key) DO UPDATE``.

    ``update_columns`` defaults to every inserted column outside the conflict key.
    An empty ``update_columns`` turns the statement into ``DO NOTHING``, in which
    case ``RETURNING`` yields no row when the key already exists.
    """
    insert = _dialect_insert(db)
    stmt = insert(model).values(**values)

    if update_columns is None:
        update_columns = [c for c in values if c not in conflict_columns]
    update_columns = list(update_columns)

    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={c: stmt.excluded[c] for c in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))

    if returning:
        stmt = stmt.returning(*returning)
    return db.execute(stmt)
