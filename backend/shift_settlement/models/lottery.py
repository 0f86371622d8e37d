from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class LotteryGame(db.Model):
    """Scratch-off game definition (price and pack size)."""
    __tablename__ = "lottery_games"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    game_code = db.Column(db.String(16), nullable=False, unique=True, index=True)
    name = db.Column(db.String(128), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    tickets_per_pack = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "game_code": self.game_code,
            "name": self.name,
            "price_cents": self.price_cents,
            "tickets_per_pack": self.tickets_per_pack,
        }


class LotteryBin(db.Model):
    """Physical display slot in a store that holds one active pack."""
    __tablename__ = "lottery_bins"
    __table_args__ = (
        db.UniqueConstraint("store_id", "bin_number", name="uq_lottery_bins_store_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    bin_number = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "bin_number": self.bin_number,
            "name": self.name,
            "is_active": self.is_active,
        }


class LotteryPack(db.Model):
    """
    Bundle of tickets sold sequentially from serial_start to serial_end.

    serial_end is the last valid ticket index (inclusive).

    LIFECYCLE:
    - ACTIVE: Activated in a bin during a shift, selling
    - DEPLETED: Sold through; depleted_* fields are written together

    A pack goes ACTIVE -> DEPLETED at most once per activation.
    """
    __tablename__ = "lottery_packs"
    __table_args__ = (
        db.UniqueConstraint("game_id", "pack_number", name="uq_lottery_packs_game_number"),
        db.Index("ix_lottery_packs_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    game_id = db.Column(db.Integer, db.ForeignKey("lottery_games.id"), nullable=False, index=True)
    pack_number = db.Column(db.String(32), nullable=False)

    serial_start = db.Column(db.String(16), nullable=False)
    serial_end = db.Column(db.String(16), nullable=False)

    current_bin_id = db.Column(db.Integer, db.ForeignKey("lottery_bins.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)  # ACTIVE, DEPLETED

    activated_shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=True, index=True)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    activated_by = db.Column(db.String(64), nullable=True)

    depleted_shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=True, index=True)
    depleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    depleted_by = db.Column(db.String(64), nullable=True)
    depletion_reason = db.Column(db.String(32), nullable=True)  # SHIFT_CLOSE, AUTO_SOLD_OUT, MANUAL_SOLD_OUT

    game = db.relationship("LotteryGame", backref=db.backref("packs", lazy=True))
    current_bin = db.relationship("LotteryBin", backref=db.backref("packs", lazy=True))

    def __repr__(self) -> str:
        return f"<LotteryPack id={self.id} number={self.pack_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "game_id": self.game_id,
            "pack_number": self.pack_number,
            "serial_start": self.serial_start,
            "serial_end": self.serial_end,
            "current_bin_id": self.current_bin_id,
            "status": self.status,
            "activated_shift_id": self.activated_shift_id,
            "activated_at": to_utc_z(self.activated_at),
            "activated_by": self.activated_by,
            "depleted_shift_id": self.depleted_shift_id,
            "depleted_at": to_utc_z(self.depleted_at),
            "depleted_by": self.depleted_by,
            "depletion_reason": self.depletion_reason,
        }


class LotteryTicketSale(db.Model):
    """
    One scanned ticket sale.

    WHY: Per-ticket tracking is the "actual" side of settlement; counts are
    grouped by pack for a shift.
    """
    __tablename__ = "lottery_ticket_sales"
    __table_args__ = (
        db.Index("ix_ticket_sales_shift_pack", "shift_id", "pack_id"),
        # A ticket leaves a pack once; a second scan of it is not a second sale
        db.UniqueConstraint("pack_id", "serial_number", name="uq_ticket_sales_pack_serial"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pack_id = db.Column(db.Integer, db.ForeignKey("lottery_packs.id"), nullable=False, index=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False, index=True)
    serial_number = db.Column(db.String(16), nullable=False)
    sold_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pack_id": self.pack_id,
            "shift_id": self.shift_id,
            "serial_number": self.serial_number,
            "sold_at": to_utc_z(self.sold_at),
        }


class LotteryShiftOpening(db.Model):
    """
    Starting serial of a pack for a shift.

    IMMUTABLE: One per (shift, pack), never updated after creation.
    """
    __tablename__ = "lottery_shift_openings"
    __table_args__ = (
        db.UniqueConstraint("shift_id", "pack_id", name="uq_shift_openings_shift_pack"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False, index=True)
    pack_id = db.Column(db.Integer, db.ForeignKey("lottery_packs.id"), nullable=False, index=True)
    opening_serial = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shift_id": self.shift_id,
            "pack_id": self.pack_id,
            "opening_serial": self.opening_serial,
            "created_at": to_utc_z(self.created_at),
        }


class LotteryShiftClosing(db.Model):
    """
    Ending serial of a pack for a shift.

    Exactly one per (shift, pack): created if absent, never overwritten.
    MANUAL entries carry who authorized them and when.
    """
    __tablename__ = "lottery_shift_closings"
    __table_args__ = (
        db.UniqueConstraint("shift_id", "pack_id", name="uq_shift_closings_shift_pack"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False, index=True)
    pack_id = db.Column(db.Integer, db.ForeignKey("lottery_packs.id"), nullable=False, index=True)
    cashier_id = db.Column(db.String(64), nullable=False)
    closing_serial = db.Column(db.String(16), nullable=False)
    entry_method = db.Column(db.String(8), nullable=False, default="SCAN")  # SCAN, MANUAL

    manual_entry_authorized_by = db.Column(db.String(64), nullable=True)
    manual_entry_authorized_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shift_id": self.shift_id,
            "pack_id": self.pack_id,
            "cashier_id": self.cashier_id,
            "closing_serial": self.closing_serial,
            "entry_method": self.entry_method,
            "manual_entry_authorized_by": self.manual_entry_authorized_by,
            "manual_entry_authorized_at": to_utc_z(self.manual_entry_authorized_at),
            "created_at": to_utc_z(self.created_at),
        }


class LotteryVariance(db.Model):
    """
    Expected vs. recorded ticket count mismatch for a pack in a shift.

    difference = actual - expected (positive = surplus, negative = shortage).
    APPEND-ONLY: written once at settlement.
    """
    __tablename__ = "lottery_variances"
    __table_args__ = (
        db.UniqueConstraint("shift_id", "pack_id", name="uq_lottery_variances_shift_pack"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False, index=True)
    pack_id = db.Column(db.Integer, db.ForeignKey("lottery_packs.id"), nullable=False, index=True)
    expected = db.Column(db.Integer, nullable=False)
    actual = db.Column(db.Integer, nullable=False)
    difference = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shift_id": self.shift_id,
            "pack_id": self.pack_id,
            "expected": self.expected,
            "actual": self.actual,
            "difference": self.difference,
            "created_at": to_utc_z(self.created_at),
        }
