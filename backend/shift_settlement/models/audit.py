from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class AuditEntry(db.Model):
    """
    Audit trail for shift and lottery mutations.

    IMMUTABLE: Never update or delete. Append-only.
    Writes are best-effort and never roll back the change they describe.
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("ix_audit_entries_table_record", "table_name", "record_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.String(64), nullable=False, index=True)  # e.g. LOTTERY_PACK_CLOSED
    table_name = db.Column(db.String(64), nullable=False)
    record_id = db.Column(db.String(64), nullable=False)

    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
