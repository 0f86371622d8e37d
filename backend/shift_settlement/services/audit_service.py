# Overview: Best-effort append-only audit trail for shift and lottery mutations.

"""
Audit writes run AFTER the primary transaction commits, in a transaction of
their own. A failed audit write is logged and dropped; it never undoes or
blocks the change it describes.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditEntry


class AuditWriteFailure(Exception):
    """Raised internally when audit rows cannot be stored; never escapes this module."""


def build_audit_entry(
    *,
    actor: str,
    action: str,
    table_name: str,
    record_id,
    old_values: dict | None = None,
    new_values: dict | None = None,
    reason: str | None = None,
) -> dict:
    return {
        "actor": actor,
        "action": action,
        "table_name": table_name,
        "record_id": str(record_id),
        "old_values": old_values,
        "new_values": new_values,
        "reason": reason,
    }


def _persist(entries: list[dict]) -> None:
    try:
        db.session.add_all([AuditEntry(**entry) for entry in entries])
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise AuditWriteFailure(f"Failed to write {len(entries)} audit entries") from exc


def write_audit_entries(entries: list[dict]) -> bool:
    """
    Store audit entries; returns False (after logging) if the write failed.

    Call only once the primary transaction has committed.
    """
    if not entries:
        return True
    try:
        _persist(entries)
    except AuditWriteFailure:
        current_app.logger.exception(
            "Audit write failed; %d entries dropped (actions: %s)",
            len(entries),
            ", ".join(sorted({e["action"] for e in entries})),
        )
        return False
    return True
