"""
Shift Lifecycle Service

WHY: Cashier accountability. A shift moves from creation through selling,
closing and cash reconciliation to a locked CLOSED record.

DESIGN PRINCIPLES:
- Every status write is decided by shift_state_machine (no direct writes)
- Sessions are immutable once closed
- Cash variance tracking (expected vs actual cash)
- Variance above BOTH thresholds needs manager approval before close
- Audit entries are written after commit and never block the change
"""

from __future__ import annotations

from ..extensions import db
from ..models import Shift, Store
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, require_actor, require_id
from .audit_service import build_audit_entry, write_audit_entries
from .concurrency import lock_for_update
from .shift_state_machine import (
    ShiftStatus,
    ShiftTrigger,
    StateMachineViolation,
    coerce_status,
    determine_next_status,
    get_allowed_transitions,
    validate_transition,
)


# Cash variance review thresholds; review is required only when both are exceeded
VARIANCE_ABSOLUTE_THRESHOLD_CENTS = 500
VARIANCE_PERCENT_THRESHOLD = 1


def variance_exceeds_threshold(variance_cents: int, expected_cash_cents: int) -> bool:
    """
    True when |variance| is over $5.00 AND over 1% of expected cash.

    With no expected cash the percentage is unbounded, so only the
    absolute threshold decides.
    """
    magnitude = abs(variance_cents)
    if magnitude <= VARIANCE_ABSOLUTE_THRESHOLD_CENTS:
        return False
    if expected_cash_cents <= 0:
        return True
    return magnitude * 100 > expected_cash_cents * VARIANCE_PERCENT_THRESHOLD


def get_shift(shift_id: int) -> Shift:
    shift = db.session.get(Shift, shift_id)
    if shift is None:
        raise NotFoundError("SHIFT_NOT_FOUND", f"Shift {shift_id} not found", entity_id=shift_id)
    return shift


def _get_shift_for_update(shift_id: int) -> Shift:
    shift = lock_for_update(db.session.query(Shift).filter_by(id=shift_id)).first()
    if shift is None:
        raise NotFoundError("SHIFT_NOT_FOUND", f"Shift {shift_id} not found", entity_id=shift_id)
    return shift


def _advance(
    shift: Shift,
    trigger: ShiftTrigger,
    intended: ShiftStatus,
    *,
    variance_exceeded: bool = False,
) -> ShiftStatus:
    """
    Move shift.status by trigger, raising if the trigger does not apply.

    intended is the status the caller is aiming for; it is only used to
    produce the right error (SHIFT_LOCKED vs INVALID_TRANSITION).
    """
    current = coerce_status(shift.status)
    target = determine_next_status(current, trigger, variance_exceeded=variance_exceeded)

    try:
        if target is current:
            validate_transition(current, intended)
            raise StateMachineViolation(
                "SHIFT_INVALID_STATUS",
                f"{trigger.value} does not apply to a shift in {current.value} status",
                current_status=current,
                attempted_status=intended,
                allowed=get_allowed_transitions(current),
            )
        validate_transition(current, target)
    except StateMachineViolation:
        # Release the row lock taken by _get_shift_for_update
        db.session.rollback()
        raise

    shift.status = target.value
    return target


def _status_audit(shift: Shift, before: dict, action: str, actor: str, reason: str | None = None) -> dict:
    return build_audit_entry(
        actor=actor,
        action=action,
        table_name="shifts",
        record_id=shift.id,
        old_values=before,
        new_values=shift.to_dict(),
        reason=reason,
    )


def create_shift(store_id: int, cashier_id: str, opening_cash_cents: int = 0) -> Shift:
    """
    Create a shift in NOT_STARTED status.

    Args:
        store_id: Store the shift belongs to
        cashier_id: Opaque id of the cashier working the shift
        opening_cash_cents: Starting cash in drawer (in cents)
    """
    store_id = require_id(store_id, "store_id")
    cashier_id = require_actor(cashier_id, "cashier_id")
    if isinstance(opening_cash_cents, bool) or not isinstance(opening_cash_cents, int) or opening_cash_cents < 0:
        raise ValidationError(
            "opening_cash_cents must be a non-negative integer",
            field="opening_cash_cents",
            value=opening_cash_cents,
        )

    if db.session.get(Store, store_id) is None:
        raise NotFoundError("STORE_NOT_FOUND", f"Store {store_id} not found", entity_id=store_id)

    shift = Shift(
        store_id=store_id,
        cashier_id=cashier_id,
        status=ShiftStatus.NOT_STARTED.value,
        opening_cash_cents=opening_cash_cents,
        expected_cash_cents=opening_cash_cents,
    )
    db.session.add(shift)
    db.session.commit()

    write_audit_entries([
        build_audit_entry(
            actor=cashier_id,
            action="SHIFT_CREATED",
            table_name="shifts",
            record_id=shift.id,
            new_values=shift.to_dict(),
        )
    ])
    return shift


def open_shift(shift_id: int, actor: str) -> Shift:
    """NOT_STARTED -> OPEN."""
    actor = require_actor(actor, "actor")
    shift = _get_shift_for_update(require_id(shift_id, "shift_id"))
    before = shift.to_dict()

    _advance(shift, ShiftTrigger.SHIFT_OPENED, ShiftStatus.OPEN)
    shift.opened_at = utcnow()
    db.session.commit()

    write_audit_entries([_status_audit(shift, before, "SHIFT_OPENED", actor)])
    return shift


def record_first_activity(shift_id: int) -> Shift:
    """
    OPEN -> ACTIVE on the first transaction; no-op in every other status.

    Safe to call on each sale. Does not commit: it joins the caller's
    transaction so the activity and the status change land together.
    """
    shift = get_shift(require_id(shift_id, "shift_id"))
    current = coerce_status(shift.status)
    target = determine_next_status(current, ShiftTrigger.FIRST_ACTIVITY)
    if target is not current:
        validate_transition(current, target)
        shift.status = target.value
    return shift


def initiate_closing(shift_id: int, actor: str) -> Shift:
    """OPEN/ACTIVE -> CLOSING. Lottery settlement and cash counts follow."""
    actor = require_actor(actor, "actor")
    shift = _get_shift_for_update(require_id(shift_id, "shift_id"))
    before = shift.to_dict()

    _advance(shift, ShiftTrigger.CLOSING_INITIATED, ShiftStatus.CLOSING)
    db.session.commit()

    write_audit_entries([_status_audit(shift, before, "SHIFT_CLOSING_INITIATED", actor)])
    return shift


def reconcile_cash(
    shift_id: int,
    closing_cash_cents: int,
    actor: str,
    variance_reason: str | None = None,
) -> Shift:
    """
    Count the drawer and close the shift, or park it in VARIANCE_REVIEW.

    CLOSING -> CLOSED when the variance is within thresholds,
    CLOSING -> VARIANCE_REVIEW when it breaches both.
    RECONCILING (legacy) always closes.

    Args:
        shift_id: Shift to reconcile
        closing_cash_cents: Actual cash counted in drawer
        actor: Who counted
        variance_reason: Optional explanation stored with the shift
    """
    actor = require_actor(actor, "actor")
    if isinstance(closing_cash_cents, bool) or not isinstance(closing_cash_cents, int) or closing_cash_cents < 0:
        raise ValidationError(
            "closing_cash_cents must be a non-negative integer",
            field="closing_cash_cents",
            value=closing_cash_cents,
        )

    shift = _get_shift_for_update(require_id(shift_id, "shift_id"))
    before = shift.to_dict()

    expected_cash = shift.expected_cash_cents
    if expected_cash is None:
        expected_cash = shift.opening_cash_cents
    variance = closing_cash_cents - expected_cash
    exceeded = variance_exceeds_threshold(variance, expected_cash)

    target = _advance(
        shift,
        ShiftTrigger.CASH_RECONCILED,
        ShiftStatus.CLOSED,
        variance_exceeded=exceeded,
    )

    shift.closing_cash_cents = closing_cash_cents
    shift.expected_cash_cents = expected_cash
    shift.variance_cents = variance
    if variance_reason:
        shift.variance_reason = variance_reason.strip()
    if target is ShiftStatus.CLOSED:
        shift.closed_at = utcnow()
        shift.closed_by = actor

    db.session.commit()

    action = "SHIFT_VARIANCE_REVIEW" if target is ShiftStatus.VARIANCE_REVIEW else "SHIFT_CLOSED"
    write_audit_entries([_status_audit(shift, before, action, actor, reason=variance_reason)])
    return shift


def approve_variance(shift_id: int, actor: str, reason: str) -> Shift:
    """
    VARIANCE_REVIEW -> CLOSED. A manager must explain the variance.

    Raises:
        ValidationError: If reason is blank
        StateMachineViolation: If the shift is not in VARIANCE_REVIEW
    """
    actor = require_actor(actor, "actor")
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("variance_reason is required when approving variance", field="reason", value=reason)

    shift = _get_shift_for_update(require_id(shift_id, "shift_id"))
    before = shift.to_dict()

    _advance(shift, ShiftTrigger.VARIANCE_APPROVED, ShiftStatus.CLOSED)
    now = utcnow()
    shift.variance_reason = reason.strip()
    shift.variance_approved_by = actor
    shift.variance_approved_at = now
    shift.closed_at = now
    shift.closed_by = actor
    db.session.commit()

    write_audit_entries([_status_audit(shift, before, "SHIFT_VARIANCE_APPROVED", actor, reason=shift.variance_reason)])
    return shift


def close_shift_directly(shift_id: int, actor: str) -> Shift:
    """OPEN/ACTIVE -> CLOSED without a cash count (e.g. lottery-only shifts)."""
    actor = require_actor(actor, "actor")
    shift = _get_shift_for_update(require_id(shift_id, "shift_id"))
    before = shift.to_dict()

    _advance(shift, ShiftTrigger.DIRECT_CLOSE, ShiftStatus.CLOSED)
    shift.closed_at = utcnow()
    shift.closed_by = actor
    db.session.commit()

    write_audit_entries([_status_audit(shift, before, "SHIFT_CLOSED", actor)])
    return shift


def list_shifts(store_id: int | None = None, status: str | None = None, limit: int = 50) -> list[Shift]:
    """Recent shifts, newest first, optionally filtered by store and status."""
    q = db.session.query(Shift)
    if store_id is not None:
        q = q.filter_by(store_id=store_id)
    if status is not None:
        q = q.filter_by(status=coerce_status(status).value)
    return q.order_by(Shift.id.desc()).limit(limit).all()
