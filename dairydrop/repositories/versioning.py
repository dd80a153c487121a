# dairydrop/repositories/versioning.py

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlmodel import Session, SQLModel


def compare_and_set(session: Session, instance: SQLModel, **changes: Any) -> bool:
    """
    Apply `changes` to `instance` only if its row still has the version we read.

    Runs `UPDATE ... WHERE id = :id AND version = :seen` inside the session's
    transaction, bumps version and updated_at, then refreshes `instance`.

    Returns False when another writer got there first (nothing is changed).
    `instance` must not carry unflushed attribute edits; pass every change
    through `changes`.
    """
    model = type(instance)
    seen_version = instance.version

    stmt = (
        update(model)
        .where(model.id == instance.id)
        .where(model.version == seen_version)
        .values(
            version=seen_version + 1,
            updated_at=datetime.now(timezone.utc),
            **changes,
        )
    )
    result = session.connection().execute(stmt)
    if result.rowcount != 1:
        return False

    session.refresh(instance)
    return True
