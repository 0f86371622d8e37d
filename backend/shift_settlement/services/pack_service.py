"""
Lottery Pack Service

WHY: Packs are the inventory unit for scratch-off tickets. Settlement needs
to know where each pack started in a shift (opening serial), which tickets
were scanned (ticket sales) and when a pack sold through (depletion).

LIFECYCLE:
- ACTIVE: placed in a bin during a shift, selling
- DEPLETED: sold through; depletion fields are written together, once
"""

from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import LotteryBin, LotteryPack, LotteryShiftClosing, LotteryShiftOpening, LotteryTicketSale
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, parse_serial, require_actor, require_id
from .audit_service import build_audit_entry, write_audit_entries
from .concurrency import insert_ignoring_conflicts, lock_for_update, run_with_retry
from .serial_math import format_serial
from .shift_service import get_shift, record_first_activity
from .shift_state_machine import (
    ShiftStatus,
    StateMachineViolation,
    can_activate_pack,
    coerce_status,
    get_pack_activation_error,
    is_working_status,
)


PACK_STATUS_ACTIVE = "ACTIVE"
PACK_STATUS_DEPLETED = "DEPLETED"

DEPLETION_SHIFT_CLOSE = "SHIFT_CLOSE"
DEPLETION_AUTO_SOLD_OUT = "AUTO_SOLD_OUT"
DEPLETION_MANUAL_SOLD_OUT = "MANUAL_SOLD_OUT"


class PackStateError(ValueError):
    """Raised when a pack operation conflicts with the pack's current status."""

    def __init__(self, code: str, message: str, *, pack_id: int | None = None):
        super().__init__(message)
        self.code = code
        self.pack_id = pack_id

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), "pack_id": self.pack_id}


def _get_pack_for_update(pack_id: int, store_id: int) -> LotteryPack:
    pack = lock_for_update(db.session.query(LotteryPack).filter_by(id=pack_id)).first()
    if pack is None or pack.store_id != store_id:
        db.session.rollback()
        raise NotFoundError("PACK_NOT_FOUND", f"Pack {pack_id} not found", entity_id=pack_id)
    return pack


def deplete_pack(pack: LotteryPack, *, shift_id: int, actor: str, reason: str, at=None) -> dict:
    """
    ACTIVE -> DEPLETED, setting every depletion field in one step.

    Does not commit. Returns the pre-change snapshot for auditing.
    """
    if pack.status != PACK_STATUS_ACTIVE:
        raise PackStateError(
            "PACK_NOT_ACTIVE",
            f"Pack {pack.pack_number} is {pack.status}; only ACTIVE packs can be depleted",
            pack_id=pack.id,
        )
    before = pack.to_dict()
    pack.status = PACK_STATUS_DEPLETED
    pack.depleted_shift_id = shift_id
    pack.depleted_at = at or utcnow()
    pack.depleted_by = actor
    pack.depletion_reason = reason
    return before


def _ticket_already_sold(pack_id: int, serial: str) -> PackStateError:
    return PackStateError(
        "TICKET_ALREADY_SOLD",
        f"Ticket {serial} of pack {pack_id} has already been sold",
        pack_id=pack_id,
    )


def _require_serial_in_pack(pack: LotteryPack, serial, field: str) -> int:
    position = parse_serial(serial, field)
    start = parse_serial(pack.serial_start, "serial_start")
    end = parse_serial(pack.serial_end, "serial_end")
    if position < start or position > end:
        raise ValidationError(
            f"{field} {serial} is outside pack {pack.pack_number} range {pack.serial_start}-{pack.serial_end}",
            field=field,
            value=serial,
        )
    return position


def activate_pack(
    pack_id: int,
    shift_id: int,
    bin_id: int,
    actor: str,
    opening_serial: str | None = None,
) -> LotteryShiftOpening:
    """
    Place a pack in a bin during a shift and record its opening serial.

    Only OPEN and ACTIVE shifts may activate packs.

    Args:
        pack_id: Pack to activate
        shift_id: Shift the pack is activated in
        bin_id: Bin the pack is placed in
        actor: Who activated it
        opening_serial: First unsold ticket; defaults to the pack's serial_start
    """
    actor = require_actor(actor, "actor")
    pack_id = require_id(pack_id, "pack_id")
    shift = get_shift(require_id(shift_id, "shift_id"))

    status = coerce_status(shift.status)
    if not can_activate_pack(status):
        raise StateMachineViolation(
            "SHIFT_LOCKED" if status is ShiftStatus.CLOSED else "SHIFT_INVALID_STATUS",
            get_pack_activation_error(status),
            current_status=status,
        )

    pack = _get_pack_for_update(pack_id, shift.store_id)
    try:
        if pack.status != PACK_STATUS_ACTIVE or pack.activated_shift_id is not None:
            raise PackStateError(
                "PACK_ALREADY_ACTIVATED",
                f"Pack {pack.pack_number} has already been activated",
                pack_id=pack.id,
            )

        bin_ = db.session.get(LotteryBin, require_id(bin_id, "bin_id"))
        if bin_ is None or bin_.store_id != shift.store_id:
            raise NotFoundError("BIN_NOT_FOUND", f"Bin {bin_id} not found", entity_id=bin_id)

        serial = opening_serial if opening_serial is not None else pack.serial_start
        opening_position = _require_serial_in_pack(pack, serial, "opening_serial")
    except (NotFoundError, PackStateError, ValidationError):
        # Release the row lock taken by _get_pack_for_update
        db.session.rollback()
        raise

    before = pack.to_dict()
    pack.current_bin_id = bin_.id
    pack.activated_shift_id = shift.id
    pack.activated_at = utcnow()
    pack.activated_by = actor

    opening = LotteryShiftOpening(shift_id=shift.id, pack_id=pack.id, opening_serial=format_serial(opening_position))
    db.session.add(opening)
    record_first_activity(shift.id)
    db.session.commit()

    write_audit_entries([
        build_audit_entry(
            actor=actor,
            action="PACK_ACTIVATED",
            table_name="lottery_packs",
            record_id=pack.id,
            old_values=before,
            new_values=pack.to_dict(),
        )
    ])
    return opening


def carry_forward_openings(shift_id: int) -> int:
    """
    Create opening records for every ACTIVE pack in the shift's store.

    Each pack opens at its most recent closing serial from an earlier shift,
    or at serial_start if it was never closed. Packs that already have an
    opening for this shift are left alone. Returns the number of rows
    attempted.

    Only NOT_STARTED, OPEN and ACTIVE shifts take new openings.
    """
    shift = get_shift(require_id(shift_id, "shift_id"))
    status = coerce_status(shift.status)
    if status is not ShiftStatus.NOT_STARTED and not is_working_status(status):
        raise StateMachineViolation(
            "SHIFT_LOCKED" if status is ShiftStatus.CLOSED else "SHIFT_INVALID_STATUS",
            f"Cannot record opening serials for a shift in {status.value} status",
            current_status=status,
        )

    packs = db.session.query(LotteryPack).filter(
        LotteryPack.store_id == shift.store_id,
        LotteryPack.status == PACK_STATUS_ACTIVE,
        LotteryPack.activated_shift_id.isnot(None),
    ).all()
    if not packs:
        return 0
    pack_ids = [p.id for p in packs]

    latest = (
        db.session.query(
            LotteryShiftClosing.pack_id,
            func.max(LotteryShiftClosing.id).label("closing_id"),
        )
        .filter(LotteryShiftClosing.pack_id.in_(pack_ids), LotteryShiftClosing.shift_id != shift.id)
        .group_by(LotteryShiftClosing.pack_id)
        .subquery()
    )
    last_serials = dict(
        db.session.query(LotteryShiftClosing.pack_id, LotteryShiftClosing.closing_serial)
        .join(latest, LotteryShiftClosing.id == latest.c.closing_id)
        .all()
    )

    rows = [
        {
            "shift_id": shift.id,
            "pack_id": pack.id,
            "opening_serial": format_serial(last_serials.get(pack.id, pack.serial_start)),
        }
        for pack in packs
    ]
    insert_ignoring_conflicts(LotteryShiftOpening, rows, conflict_columns=("shift_id", "pack_id"))
    db.session.commit()
    return len(rows)


def record_ticket_sale(pack_id: int, shift_id: int, serial_number: str) -> LotteryTicketSale:
    """
    Record one scanned ticket.

    Marks the shift ACTIVE on its first sale and depletes the pack
    (AUTO_SOLD_OUT) when the last ticket in the pack is sold. A serial
    already sold from the pack is rejected with TICKET_ALREADY_SOLD.
    """
    pack_id = require_id(pack_id, "pack_id")
    shift_id = require_id(shift_id, "shift_id")

    def _op():
        shift = get_shift(shift_id)
        status = coerce_status(shift.status)
        if not is_working_status(status):
            raise StateMachineViolation(
                "SHIFT_LOCKED" if status is ShiftStatus.CLOSED else "SHIFT_INVALID_STATUS",
                f"Cannot sell tickets in a {status.value} shift",
                current_status=status,
            )

        pack = _get_pack_for_update(pack_id, shift.store_id)
        try:
            if pack.status != PACK_STATUS_ACTIVE:
                raise PackStateError("PACK_NOT_ACTIVE", f"Pack {pack.pack_number} is {pack.status}", pack_id=pack.id)

            position = _require_serial_in_pack(pack, serial_number, "serial_number")
            serial = format_serial(position)
            already_sold = db.session.query(LotteryTicketSale.id).filter_by(
                pack_id=pack.id,
                serial_number=serial,
            ).first()
            if already_sold is not None:
                raise _ticket_already_sold(pack.id, serial)
        except (PackStateError, ValidationError):
            # Release the row lock taken by _get_pack_for_update
            db.session.rollback()
            raise

        sale = LotteryTicketSale(pack_id=pack.id, shift_id=shift.id, serial_number=serial)
        db.session.add(sale)
        record_first_activity(shift.id)

        if position == parse_serial(pack.serial_end, "serial_end"):
            deplete_pack(pack, shift_id=shift.id, actor=shift.cashier_id, reason=DEPLETION_AUTO_SOLD_OUT)

        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent scan of the same ticket won the unique constraint
            db.session.rollback()
            raise _ticket_already_sold(pack_id, serial) from None
        return sale

    return run_with_retry(_op)


def mark_pack_sold_out(pack_id: int, shift_id: int, actor: str) -> LotteryPack:
    """Manually deplete an ACTIVE pack (MANUAL_SOLD_OUT) during a working shift."""
    actor = require_actor(actor, "actor")
    shift = get_shift(require_id(shift_id, "shift_id"))
    status = coerce_status(shift.status)
    if not is_working_status(status):
        raise StateMachineViolation(
            "SHIFT_LOCKED" if status is ShiftStatus.CLOSED else "SHIFT_INVALID_STATUS",
            f"Cannot mark packs sold out in a {status.value} shift",
            current_status=status,
        )

    pack_id = require_id(pack_id, "pack_id")
    pack = _get_pack_for_update(pack_id, shift.store_id)

    try:
        before = deplete_pack(pack, shift_id=shift.id, actor=actor, reason=DEPLETION_MANUAL_SOLD_OUT)
    except PackStateError:
        db.session.rollback()
        raise
    db.session.commit()

    write_audit_entries([
        build_audit_entry(
            actor=actor,
            action="PACK_DEPLETED",
            table_name="lottery_packs",
            record_id=pack.id,
            old_values=before,
            new_values=pack.to_dict(),
            reason=DEPLETION_MANUAL_SOLD_OUT,
        )
    ])
    return pack
