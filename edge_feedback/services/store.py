"""
Keyed write primitives on top of the SQLAlchemy session.

Both helpers rely on a unique constraint rather than read-then-write, so two
concurrent callers can never persist divergent rows for the same key:

    insert_if_absent  - INSERT ... ON CONFLICT DO NOTHING
    upsert            - INSERT ... ON CONFLICT DO UPDATE (last write wins)

PostgreSQL and SQLite use the native ON CONFLICT clause.  Other dialects
insert inside a SAVEPOINT and treat IntegrityError as "row already there".
"""

import logging
from typing import Dict, Iterable, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_NATIVE_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _native_insert(db: Session):
    return _NATIVE_INSERTS.get(db.get_bind().dialect.name)


def insert_if_absent(db: Session, model, values: Dict, key: Sequence[str]) -> None:
    """Insert ``values`` unless a row with the same ``key`` columns exists."""
    insert = _native_insert(db)
    if insert is not None:
        stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=list(key))
        db.execute(stmt)
        return

    try:
        with db.begin_nested():
            db.add(model(**values))
    except IntegrityError:
        logger.debug("%s already present for %s", model.__tablename__, {k: values[k] for k in key})


def upsert(
    db: Session,
    model,
    values: Dict,
    key: Sequence[str],
    update_columns: Iterable[str],
) -> None:
    """Insert ``values`` or overwrite ``update_columns`` on the row matching ``key``."""
    update_columns = list(update_columns)
    insert = _native_insert(db)
    if insert is not None:
        stmt = insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key),
            set_={col: stmt.excluded[col] for col in update_columns},
        )
        db.execute(stmt)
        return

    try:
        with db.begin_nested():
            db.add(model(**values))
    except IntegrityError:
        (
            db.query(model)
            .filter_by(**{k: values[k] for k in key})
            .update({col: values[col] for col in update_columns}, synchronize_session=False)
        )
