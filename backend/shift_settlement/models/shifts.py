from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Shift(db.Model):
    """
    Cashier work shift.

    WHY: Unit of cashier accountability. Lottery packs are opened against a
    shift and settled when it ends; cash is reconciled on the same record.

    LIFECYCLE (owned by services/shift_state_machine.py):
    NOT_STARTED -> OPEN -> ACTIVE -> CLOSING -> (VARIANCE_REVIEW) -> CLOSED
    RECONCILING is a legacy status that can only auto-close.

    IMMUTABLE: Once CLOSED, no field may change.
    """
    __tablename__ = "shifts"
    __table_args__ = (
        db.Index("ix_shifts_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # Opaque actor id supplied by the auth layer
    cashier_id = db.Column(db.String(64), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default="NOT_STARTED", index=True)

    # Cash tracking (all amounts in cents)
    opening_cash_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_cash_cents = db.Column(db.Integer, nullable=True)
    expected_cash_cents = db.Column(db.Integer, nullable=True)
    variance_cents = db.Column(db.Integer, nullable=True)  # closing - expected

    # Variance review
    variance_reason = db.Column(db.Text, nullable=True)
    variance_approved_by = db.Column(db.String(64), nullable=True)
    variance_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("shifts", lazy=True))

    def __repr__(self) -> str:
        return f"<Shift id={self.id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "cashier_id": self.cashier_id,
            "status": self.status,
            "opening_cash_cents": self.opening_cash_cents,
            "closing_cash_cents": self.closing_cash_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "variance_cents": self.variance_cents,
            "variance_reason": self.variance_reason,
            "variance_approved_by": self.variance_approved_by,
            "variance_approved_at": to_utc_z(self.variance_approved_at),
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at),
            "closed_by": self.closed_by,
        }
