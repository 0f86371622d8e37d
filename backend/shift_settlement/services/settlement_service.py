# Overview: End-of-shift lottery settlement; one atomic batch over every pack in the shift.

"""
Lottery Shift Settlement Service

================================================================================
PURPOSE: Close every lottery pack touched by a shift in ONE transaction
================================================================================

INPUT:
    shift id, manual pack closings (scanned or hand-keyed ending serials),
    id of the actor closing the shift

TWO KINDS OF PACK:
    Auto-close: packs activated AND depleted during this shift (sold out
        mid-shift). Closed at serial_end with the depletion formula.
    Manual: packs the cashier counted at shift end. Closed at the given
        serial with the continuing formula; depleted here when the closing
        serial reaches serial_end.

ALGORITHM (round trips do not grow with pack count):
    1. Validate inputs                         (no I/O)
    2. Load shift, take advisory lock          (1-2 queries)
    3. Auto-close candidates + existing closings for the shift
    4. Filter candidates (not closed, not in manual list)
    5. Manual packs, their games, openings, grouped ticket counts
    6. Every manual pack must exist and have an opening, else abort
    7/8. Compute expected/actual/variance per pack in memory
    9. Bulk insert closings, then variances (conflict-skipping), commit
   10. Audit entries in their own transaction (best-effort)

RULES:
- Any error before commit rolls back everything: closings, variances and
  pack status changes land together or not at all
- Existing (shift, pack) closings are never overwritten; retries are no-ops
- Audit failures are logged and swallowed
- No automatic retries here; the caller owns retry policy

================================================================================
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import (
    LotteryGame,
    LotteryPack,
    LotteryShiftClosing,
    LotteryShiftOpening,
    LotteryTicketSale,
    LotteryVariance,
    Shift,
)
from ..time_utils import parse_iso_datetime, to_utc_naive, utcnow
from ..validation import NotFoundError, ValidationError, parse_serial, require_actor, require_id
from .audit_service import build_audit_entry, write_audit_entries
from .concurrency import acquire_shift_lock, apply_statement_timeout, insert_ignoring_conflicts, lock_for_update
from .pack_service import DEPLETION_SHIFT_CLOSE, PACK_STATUS_ACTIVE, PACK_STATUS_DEPLETED, deplete_pack
from .serial_math import format_serial, tickets_sold_continuing, tickets_sold_depletion
from .shift_state_machine import ShiftStatus, StateMachineViolation, can_close_pack, coerce_status
from .variance_service import detect_variance, resolve_actual_count


ENTRY_METHOD_SCAN = "SCAN"
ENTRY_METHOD_MANUAL = "MANUAL"
ENTRY_METHODS = (ENTRY_METHOD_SCAN, ENTRY_METHOD_MANUAL)

DEFAULT_TIMEOUT_SECONDS = 60


class SettlementTimeout(RuntimeError):
    """Settlement ran past its deadline; the transaction was rolled back."""

    code = "SETTLEMENT_TIMEOUT"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


@dataclass(frozen=True)
class PackClosingInput:
    pack_id: int
    closing_serial: str
    entry_method: str = ENTRY_METHOD_SCAN
    bin_id: int | None = None
    manual_entry_authorized_by: str | None = None
    manual_entry_authorized_at: datetime | None = None


@dataclass(frozen=True)
class PackVariance:
    pack_id: int
    pack_number: str
    game_name: str | None
    expected: int
    actual: int
    difference: int

    def to_dict(self) -> dict:
        return {
            "pack_id": self.pack_id,
            "pack_number": self.pack_number,
            "game_name": self.game_name,
            "expected": self.expected,
            "actual": self.actual,
            "difference": self.difference,
        }


@dataclass
class SettlementResult:
    shift_id: int
    packs_closed: int = 0
    packs_depleted: int = 0
    total_tickets_sold: int = 0
    variances: list[PackVariance] = field(default_factory=list)
    already_closed_pack_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "shift_id": self.shift_id,
            "packs_closed": self.packs_closed,
            "packs_depleted": self.packs_depleted,
            "total_tickets_sold": self.total_tickets_sold,
            "variances": [v.to_dict() for v in self.variances],
            "already_closed_pack_ids": list(self.already_closed_pack_ids),
        }


# =============================================================================
# INPUT VALIDATION (step 1, no I/O)
# =============================================================================

def _get(raw, key: str):
    if isinstance(raw, PackClosingInput):
        return getattr(raw, key)
    return raw.get(key)


def _parse_authorized_at(value, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if isinstance(value, str):
        try:
            parsed = parse_iso_datetime(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed
    raise ValidationError(f"{field_name} must be an ISO-8601 datetime", field=field_name, value=value)


def validate_closing_input(raw, index: int) -> PackClosingInput:
    """Normalize one closing (dict or PackClosingInput), naming the bad field on failure."""
    prefix = f"closings[{index}]"
    if not isinstance(raw, (dict, PackClosingInput)):
        raise ValidationError(f"{prefix} must be an object", field=prefix, value=raw)

    pack_id = require_id(_get(raw, "pack_id"), f"{prefix}.pack_id")

    closing_serial = _get(raw, "closing_serial")
    if closing_serial is None and isinstance(raw, dict):
        closing_serial = raw.get("ending_serial")
    if closing_serial is None:
        raise ValidationError(f"{prefix}.closing_serial is required", field=f"{prefix}.closing_serial")
    closing_position = parse_serial(closing_serial, f"{prefix}.closing_serial")

    entry_method = _get(raw, "entry_method")
    if entry_method not in ENTRY_METHODS:
        raise ValidationError(
            f"{prefix}.entry_method must be 'SCAN' or 'MANUAL'",
            field=f"{prefix}.entry_method",
            value=entry_method,
        )

    bin_id = _get(raw, "bin_id")
    if bin_id is not None:
        bin_id = require_id(bin_id, f"{prefix}.bin_id")

    authorized_by = _get(raw, "manual_entry_authorized_by")
    authorized_at = _get(raw, "manual_entry_authorized_at")

    if entry_method == ENTRY_METHOD_MANUAL:
        authorized_by = require_actor(authorized_by, f"{prefix}.manual_entry_authorized_by")
        if authorized_at is None:
            raise ValidationError(
                f"{prefix}.manual_entry_authorized_at is required for MANUAL entry",
                field=f"{prefix}.manual_entry_authorized_at",
            )
        authorized_at = _parse_authorized_at(authorized_at, f"{prefix}.manual_entry_authorized_at")
    elif authorized_by is not None or authorized_at is not None:
        raise ValidationError(
            f"{prefix} manual entry authorization is only allowed for MANUAL entry",
            field=f"{prefix}.manual_entry_authorized_by",
            value=authorized_by,
        )

    return PackClosingInput(
        pack_id=pack_id,
        closing_serial=format_serial(closing_position),
        entry_method=entry_method,
        bin_id=bin_id,
        manual_entry_authorized_by=authorized_by,
        manual_entry_authorized_at=authorized_at,
    )


def validate_settlement_request(shift_id, closings, closed_by) -> tuple[int, list[PackClosingInput], str]:
    shift_id = require_id(shift_id, "shift_id")
    closed_by = require_actor(closed_by, "closed_by")

    if closings is None:
        closings = []
    if not isinstance(closings, (list, tuple)):
        raise ValidationError("closings must be a list", field="closings", value=closings)

    parsed = [validate_closing_input(raw, i) for i, raw in enumerate(closings)]

    seen: set[int] = set()
    for i, closing in enumerate(parsed):
        if closing.pack_id in seen:
            raise ValidationError(
                f"Duplicate pack_id found: {closing.pack_id}",
                field=f"closings[{i}].pack_id",
                value=closing.pack_id,
            )
        seen.add(closing.pack_id)

    return shift_id, parsed, closed_by


# =============================================================================
# SETTLEMENT
# =============================================================================

def _check_deadline(deadline: float, shift_id: int) -> None:
    if time.monotonic() > deadline:
        raise SettlementTimeout(f"Settlement of shift {shift_id} exceeded its time limit")


def _closing_row(shift_id: int, pack_id: int, closing_serial: str, closed_by: str, closing: PackClosingInput | None) -> dict:
    return {
        "shift_id": shift_id,
        "pack_id": pack_id,
        "cashier_id": closed_by,
        "closing_serial": closing_serial,
        "entry_method": closing.entry_method if closing else ENTRY_METHOD_SCAN,
        "manual_entry_authorized_by": closing.manual_entry_authorized_by if closing else None,
        "manual_entry_authorized_at": closing.manual_entry_authorized_at if closing else None,
        "created_at": utcnow(),
    }


def close_lottery_for_shift(
    shift_id,
    closings,
    closed_by,
    *,
    timeout_seconds: float | None = None,
) -> SettlementResult:
    """
    Settle all lottery packs for a shift atomically.

    Args:
        shift_id: Shift to settle
        closings: Manual pack closings (dicts or PackClosingInput); may be empty
            when only sold-out packs need closing
        closed_by: Opaque id of the actor closing the shift
        timeout_seconds: Override for SETTLEMENT_TIMEOUT_SECONDS

    Returns:
        SettlementResult with counts and the variances recorded

    Raises:
        ValidationError: Malformed input (before any I/O)
        NotFoundError: Shift, manual pack or opening record missing
        StateMachineViolation: Shift status does not allow closing packs
        SettlementTimeout: Deadline exceeded
    """
    shift_id, manual_closings, closed_by = validate_settlement_request(shift_id, closings, closed_by)

    if timeout_seconds is None:
        timeout_seconds = current_app.config.get("SETTLEMENT_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
    deadline = time.monotonic() + timeout_seconds

    result = SettlementResult(shift_id=shift_id)
    audit_entries: list[dict] = []

    try:
        acquire_shift_lock(shift_id)
        apply_statement_timeout(timeout_seconds)

        shift = db.session.get(Shift, shift_id)
        if shift is None:
            raise NotFoundError("SHIFT_NOT_FOUND", f"Shift {shift_id} not found", entity_id=shift_id)

        status = coerce_status(shift.status)
        if not can_close_pack(status):
            raise StateMachineViolation(
                "SHIFT_LOCKED" if status is ShiftStatus.CLOSED else "SHIFT_INVALID_STATUS",
                f"Cannot close lottery packs for a shift in {status.value} status",
                current_status=status,
            )

        # Step 3: sold-out packs from this shift, and what is already closed
        sold_out_packs = db.session.query(LotteryPack).filter(
            LotteryPack.store_id == shift.store_id,
            LotteryPack.activated_shift_id == shift.id,
            LotteryPack.depleted_shift_id == shift.id,
            LotteryPack.status == PACK_STATUS_DEPLETED,
        ).all()
        already_closed = {
            pack_id
            for (pack_id,) in db.session.query(LotteryShiftClosing.pack_id).filter_by(shift_id=shift.id).all()
        }

        # Step 4
        manual_ids = [c.pack_id for c in manual_closings]
        manual_id_set = set(manual_ids)
        auto_packs = [
            p for p in sold_out_packs
            if p.id not in already_closed and p.id not in manual_id_set
        ]

        # Step 5: one query per concern, independent of pack count
        manual_packs: dict[int, LotteryPack] = {}
        if manual_ids:
            manual_packs = {
                p.id: p
                for p in lock_for_update(
                    db.session.query(LotteryPack).filter(LotteryPack.id.in_(manual_ids))
                ).all()
            }

        all_ids = list(manual_id_set | {p.id for p in auto_packs})
        openings: dict[int, str] = {}
        tracked_counts: dict[int, int] = {}
        games: dict[int, LotteryGame] = {}
        if all_ids:
            openings = dict(
                db.session.query(LotteryShiftOpening.pack_id, LotteryShiftOpening.opening_serial)
                .filter(LotteryShiftOpening.shift_id == shift.id, LotteryShiftOpening.pack_id.in_(all_ids))
                .all()
            )
            tracked_counts = dict(
                db.session.query(LotteryTicketSale.pack_id, func.count(LotteryTicketSale.id))
                .filter(LotteryTicketSale.shift_id == shift.id, LotteryTicketSale.pack_id.in_(all_ids))
                .group_by(LotteryTicketSale.pack_id)
                .all()
            )
            game_ids = {p.game_id for p in manual_packs.values()} | {p.game_id for p in auto_packs}
            games = {g.id: g for g in db.session.query(LotteryGame).filter(LotteryGame.id.in_(game_ids)).all()}

        # Step 6: every manual pack must exist in this store, sit in the given bin and have an opening
        for index, closing in enumerate(manual_closings):
            pack = manual_packs.get(closing.pack_id)
            if pack is None or pack.store_id != shift.store_id:
                raise NotFoundError(
                    "PACK_NOT_FOUND",
                    f"Pack {closing.pack_id} not found for shift {shift.id}",
                    entity_id=closing.pack_id,
                )
            if closing.bin_id is not None and closing.bin_id != pack.current_bin_id:
                raise ValidationError(
                    f"Pack {pack.pack_number} is not in bin {closing.bin_id}",
                    field=f"closings[{index}].bin_id",
                    value=closing.bin_id,
                )
            if closing.pack_id not in openings:
                raise NotFoundError(
                    "OPENING_NOT_FOUND",
                    f"No opening serial recorded for pack {closing.pack_id} in shift {shift.id}",
                    entity_id=closing.pack_id,
                )

        _check_deadline(deadline, shift.id)

        closing_rows: list[dict] = []
        variance_rows: list[dict] = []
        closed_pack_ids: list[int] = []
        closing_snapshots: dict[int, dict] = {}

        def _account(pack: LotteryPack, expected: int) -> None:
            actual = resolve_actual_count(expected, tracked_counts.get(pack.id))
            variance = detect_variance(expected, actual)
            result.total_tickets_sold += expected
            closing_snapshots[pack.id] = {"expected": expected, "actual": actual}
            if variance is not None:
                variance_rows.append({
                    "shift_id": shift.id,
                    "pack_id": pack.id,
                    "expected": variance.expected,
                    "actual": variance.actual,
                    "difference": variance.difference,
                    "created_at": utcnow(),
                })
                game = games.get(pack.game_id)
                result.variances.append(PackVariance(
                    pack_id=pack.id,
                    pack_number=pack.pack_number,
                    game_name=game.name if game else None,
                    expected=variance.expected,
                    actual=variance.actual,
                    difference=variance.difference,
                ))

        # Step 7: sold-out packs close at serial_end
        for pack in auto_packs:
            opening_serial = openings.get(pack.id)
            if opening_serial is None:
                current_app.logger.warning(
                    "Sold-out pack %s has no opening for shift %s; using serial_start %s",
                    pack.id, shift.id, pack.serial_start,
                )
                opening_serial = pack.serial_start
            expected = tickets_sold_depletion(opening_serial, pack.serial_end)
            _account(pack, expected)
            closing_rows.append(_closing_row(shift.id, pack.id, format_serial(pack.serial_end), closed_by, None))
            closed_pack_ids.append(pack.id)
            result.packs_depleted += 1

        # Step 8: counted packs close at the given serial
        depleted_at = utcnow()
        for closing in manual_closings:
            if closing.pack_id in already_closed:
                current_app.logger.warning(
                    "Pack %s already closed for shift %s; skipping",
                    closing.pack_id, shift.id,
                )
                result.already_closed_pack_ids.append(closing.pack_id)
                continue

            pack = manual_packs[closing.pack_id]
            expected = tickets_sold_continuing(openings[pack.id], closing.closing_serial)
            _account(pack, expected)
            closing_rows.append(_closing_row(shift.id, pack.id, closing.closing_serial, closed_by, closing))
            closed_pack_ids.append(pack.id)

            reaches_end = parse_serial(closing.closing_serial, "closing_serial") >= parse_serial(pack.serial_end, "serial_end")
            if reaches_end and pack.status == PACK_STATUS_ACTIVE:
                before = deplete_pack(
                    pack,
                    shift_id=shift.id,
                    actor=closed_by,
                    reason=DEPLETION_SHIFT_CLOSE,
                    at=depleted_at,
                )
                result.packs_depleted += 1
                audit_entries.append(build_audit_entry(
                    actor=closed_by,
                    action="PACK_DEPLETED",
                    table_name="lottery_packs",
                    record_id=pack.id,
                    old_values=before,
                    new_values=pack.to_dict(),
                    reason=DEPLETION_SHIFT_CLOSE,
                ))

        # Step 9: conflict-skipping bulk inserts, then the single commit
        insert_ignoring_conflicts(LotteryShiftClosing, closing_rows, conflict_columns=("shift_id", "pack_id"))
        insert_ignoring_conflicts(LotteryVariance, variance_rows, conflict_columns=("shift_id", "pack_id"))
        db.session.flush()

        closing_ids: dict[int, int] = {}
        if closed_pack_ids:
            closing_ids = dict(
                db.session.query(LotteryShiftClosing.pack_id, LotteryShiftClosing.id)
                .filter(LotteryShiftClosing.shift_id == shift.id, LotteryShiftClosing.pack_id.in_(closed_pack_ids))
                .all()
            )

        _check_deadline(deadline, shift.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    result.packs_closed = len(closed_pack_ids)

    for row in closing_rows:
        pack_id = row["pack_id"]
        audit_entries.append(build_audit_entry(
            actor=closed_by,
            action="LOTTERY_PACK_CLOSED",
            table_name="lottery_shift_closings",
            record_id=closing_ids.get(pack_id, f"{shift_id}:{pack_id}"),
            new_values={
                "shift_id": shift_id,
                "pack_id": pack_id,
                "closing_serial": row["closing_serial"],
                "entry_method": row["entry_method"],
                "manual_entry_authorized_by": row["manual_entry_authorized_by"],
                **closing_snapshots[pack_id],
            },
            reason="Shift lottery settlement",
        ))
    write_audit_entries(audit_entries)

    current_app.logger.info(
        "Settled shift %s: %d packs closed, %d depleted, %d tickets, %d variances",
        shift_id,
        result.packs_closed,
        result.packs_depleted,
        result.total_tickets_sold,
        len(result.variances),
    )
    return result
