# shortlet_engine/infrastructure/db/statements.py

import json
from typing import Any

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session


def insert_if_absent(
    db: Session,
    model,
    values: dict[str, Any],
    conflict_column: str,
) -> bool:
    """
    Single-statement "insert unless the unique key already exists".
    Returns True when this call created the row.
    """
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        stmt = (
            postgresql.insert(model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[conflict_column])
        )
        return db.execute(stmt).rowcount == 1

    if dialect == "sqlite":
        stmt = (
            sqlite.insert(model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[conflict_column])
        )
        return db.execute(stmt).rowcount == 1

    # Other backends: let the unique constraint decide inside a savepoint.
    try:
        with db.begin_nested():
            db.execute(insert(model).values(**values))
    except IntegrityError:
        return False
    return True


def dump_json(payload: dict[str, Any] | None) -> str:
    return json.dumps(payload or {}, sort_keys=True, default=str)


def load_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}
