# Overview: Locking, retry, timeout and conflict-skipping insert helpers shared by services.

from __future__ import annotations

import time
from typing import Iterable, Sequence

from sqlalchemy import text, tuple_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def _dialect_name() -> str:
    return db.session.get_bind().dialect.name


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def acquire_shift_lock(shift_id: int) -> bool:
    """
    Serialize settlements of one shift for the rest of the transaction.

    PostgreSQL only (pg_advisory_xact_lock releases at commit/rollback).
    Returns False where the dialect has no advisory locks; callers then rely
    on the duplicate-closing check plus conflict-skipping inserts.
    """
    if _dialect_name() != "postgresql":
        return False
    db.session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": int(shift_id)})
    return True


def apply_statement_timeout(seconds: float) -> bool:
    """Bound each statement of the current transaction (PostgreSQL only)."""
    if _dialect_name() != "postgresql":
        return False
    millis = max(1, int(seconds * 1000))
    db.session.execute(text(f"SET LOCAL statement_timeout = {millis}"))
    return True


def insert_ignoring_conflicts(model, rows: Sequence[dict], *, conflict_columns: Iterable[str]) -> None:
    """
    Bulk insert rows, silently skipping any that collide on conflict_columns.

    Uses INSERT ... ON CONFLICT DO NOTHING on PostgreSQL and SQLite. Other
    dialects fall back to reading the existing keys and inserting the rest,
    which is only as strong as the surrounding lock.
    """
    if not rows:
        return

    columns = list(conflict_columns)
    dialect = _dialect_name()

    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        stmt = insert(model.__table__).on_conflict_do_nothing(index_elements=columns)
        db.session.execute(stmt, list(rows))
        return

    keys = {tuple(row[c] for c in columns) for row in rows}
    key_cols = [getattr(model, c) for c in columns]
    existing = {
        tuple(found)
        for found in db.session.query(*key_cols).filter(tuple_(*key_cols).in_(list(keys))).all()
    }
    seen = set(existing)
    for row in rows:
        key = tuple(row[c] for c in columns)
        if key in seen:
            continue
        seen.add(key)
        db.session.add(model(**row))
    db.session.flush()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
