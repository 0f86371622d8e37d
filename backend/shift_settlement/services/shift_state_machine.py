# Overview: Shift status rules; the single authority for which status changes are legal.

"""
Shift State Machine

================================================================================
PURPOSE: Decide every shift status change from one fixed transition table
================================================================================

STATE MACHINE:
    NOT_STARTED -> OPEN
    OPEN        -> ACTIVE | CLOSING | CLOSED
    ACTIVE      -> CLOSING | CLOSED
    CLOSING     -> CLOSED | VARIANCE_REVIEW
    RECONCILING -> CLOSED                      (legacy auto-close)
    VARIANCE_REVIEW -> CLOSED                  (explicit approval only)
    CLOSED      -> (terminal)

RULES (NON-NEGOTIABLE):
1. Status columns are written only after validate_transition() passes
2. CLOSED is terminal; any attempt to leave it is SHIFT_LOCKED
3. CLOSING -> VARIANCE_REVIEW only when cash variance breaches both the
   absolute and the percentage threshold (see shift_service)
4. Everything here is a pure function of the status passed in; there is no
   state-machine instance and no module-level mutable state

TRIGGERS:
    determine_next_status() maps a semantic trigger to a status. Triggers
    that do not apply to the current status return it unchanged, so callers
    can fire them unconditionally (e.g. FIRST_ACTIVITY on every sale).

================================================================================
"""

from __future__ import annotations

from enum import Enum

from ..validation import ValidationError


class ShiftStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    OPEN = "OPEN"
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    RECONCILING = "RECONCILING"
    VARIANCE_REVIEW = "VARIANCE_REVIEW"
    CLOSED = "CLOSED"


class ShiftTrigger(str, Enum):
    SHIFT_OPENED = "SHIFT_OPENED"
    FIRST_ACTIVITY = "FIRST_ACTIVITY"
    CLOSING_INITIATED = "CLOSING_INITIATED"
    CASH_RECONCILED = "CASH_RECONCILED"
    VARIANCE_DETECTED = "VARIANCE_DETECTED"
    VARIANCE_APPROVED = "VARIANCE_APPROVED"
    DIRECT_CLOSE = "DIRECT_CLOSE"


VALID_TRANSITIONS: dict[ShiftStatus, tuple[ShiftStatus, ...]] = {
    ShiftStatus.NOT_STARTED: (ShiftStatus.OPEN,),
    ShiftStatus.OPEN: (ShiftStatus.ACTIVE, ShiftStatus.CLOSING, ShiftStatus.CLOSED),
    ShiftStatus.ACTIVE: (ShiftStatus.CLOSING, ShiftStatus.CLOSED),
    ShiftStatus.CLOSING: (ShiftStatus.CLOSED, ShiftStatus.VARIANCE_REVIEW),
    ShiftStatus.RECONCILING: (ShiftStatus.CLOSED,),
    ShiftStatus.VARIANCE_REVIEW: (ShiftStatus.CLOSED,),
    ShiftStatus.CLOSED: (),
}

if set(VALID_TRANSITIONS) != set(ShiftStatus):
    raise RuntimeError("VALID_TRANSITIONS must cover every ShiftStatus")

WORKING_SHIFT_STATUSES = frozenset({ShiftStatus.OPEN, ShiftStatus.ACTIVE})
UNCLOSED_SHIFT_STATUSES = frozenset({
    ShiftStatus.OPEN,
    ShiftStatus.ACTIVE,
    ShiftStatus.CLOSING,
    ShiftStatus.RECONCILING,
    ShiftStatus.VARIANCE_REVIEW,
})
PACK_ACTIVATION_ALLOWED_STATUSES = WORKING_SHIFT_STATUSES
PACK_CLOSING_ALLOWED_STATUSES = frozenset({ShiftStatus.OPEN, ShiftStatus.ACTIVE, ShiftStatus.CLOSING})

STATUS_DESCRIPTIONS: dict[ShiftStatus, str] = {
    ShiftStatus.NOT_STARTED: "Shift has been created but not yet opened",
    ShiftStatus.OPEN: "Shift is open and ready for transactions",
    ShiftStatus.ACTIVE: "Shift is active with transactions in progress",
    ShiftStatus.CLOSING: "Shift is closing; lottery and cash counts are being taken",
    ShiftStatus.RECONCILING: "Shift is reconciling (legacy status, closes automatically)",
    ShiftStatus.VARIANCE_REVIEW: "Cash variance exceeds thresholds and awaits manager approval",
    ShiftStatus.CLOSED: "Shift is closed and locked against further changes",
}

_PACK_ACTIVATION_ERRORS: dict[ShiftStatus, str] = {
    ShiftStatus.NOT_STARTED: "Cannot activate pack: the shift has not been opened yet",
    ShiftStatus.CLOSING: "Cannot activate pack: the shift is closing. Activate packs before starting close.",
    ShiftStatus.RECONCILING: "Cannot activate pack: the shift is being reconciled",
    ShiftStatus.VARIANCE_REVIEW: "Cannot activate pack: the shift is in variance review awaiting approval",
    ShiftStatus.CLOSED: "Cannot activate pack: the shift is closed and can no longer be modified",
}


class StateMachineViolation(ValueError):
    """
    Raised when a status change is not permitted.

    code is SHIFT_LOCKED (source is CLOSED), INVALID_TRANSITION (target not in
    the allowed set) or SHIFT_INVALID_STATUS (operation not allowed in the
    current status). Retrying with the same arguments fails the same way.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        current_status: ShiftStatus,
        attempted_status: ShiftStatus | None = None,
        allowed: tuple[ShiftStatus, ...] = (),
    ):
        super().__init__(message)
        self.code = code
        self.current_status = current_status
        self.attempted_status = attempted_status
        self.allowed = allowed

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": str(self),
            "current_status": self.current_status.value,
            "attempted_status": self.attempted_status.value if self.attempted_status else None,
            "allowed": [s.value for s in self.allowed],
        }


def coerce_status(status: ShiftStatus | str) -> ShiftStatus:
    """Accept enum members or their string values; reject anything else."""
    try:
        return ShiftStatus(status)
    except ValueError:
        raise ValidationError(
            f"Invalid shift status '{status}'. Must be one of: {', '.join(s.value for s in ShiftStatus)}",
            field="status",
            value=status,
        ) from None


def get_allowed_transitions(status: ShiftStatus | str) -> tuple[ShiftStatus, ...]:
    return tuple(VALID_TRANSITIONS[coerce_status(status)])


def can_transition(from_status: ShiftStatus | str, to_status: ShiftStatus | str) -> bool:
    return coerce_status(to_status) in VALID_TRANSITIONS[coerce_status(from_status)]


def validate_transition(from_status: ShiftStatus | str, to_status: ShiftStatus | str) -> None:
    """
    Raise StateMachineViolation unless from_status -> to_status is allowed.

    SHIFT_LOCKED wins over INVALID_TRANSITION: nothing leaves CLOSED.
    """
    source = coerce_status(from_status)
    target = coerce_status(to_status)

    if source is ShiftStatus.CLOSED:
        raise StateMachineViolation(
            "SHIFT_LOCKED",
            "Shift is CLOSED and cannot be modified",
            current_status=source,
            attempted_status=target,
        )

    allowed = VALID_TRANSITIONS[source]
    if target not in allowed:
        raise StateMachineViolation(
            "INVALID_TRANSITION",
            f"Cannot transition shift from {source.value} to {target.value}. "
            f"Allowed: {', '.join(s.value for s in allowed)}",
            current_status=source,
            attempted_status=target,
            allowed=allowed,
        )


def is_working_status(status: ShiftStatus | str) -> bool:
    return coerce_status(status) in WORKING_SHIFT_STATUSES


def is_unclosed_status(status: ShiftStatus | str) -> bool:
    return coerce_status(status) in UNCLOSED_SHIFT_STATUSES


def can_activate_pack(status: ShiftStatus | str) -> bool:
    return coerce_status(status) in PACK_ACTIVATION_ALLOWED_STATUSES


def can_close_pack(status: ShiftStatus | str) -> bool:
    return coerce_status(status) in PACK_CLOSING_ALLOWED_STATUSES


def get_status_description(status: ShiftStatus | str) -> str:
    return STATUS_DESCRIPTIONS[coerce_status(status)]


def get_pack_activation_error(status: ShiftStatus | str) -> str | None:
    """Human-readable reason pack activation is blocked, or None if allowed."""
    return _PACK_ACTIVATION_ERRORS.get(coerce_status(status))


def determine_next_status(
    current: ShiftStatus | str,
    trigger: ShiftTrigger | str,
    *,
    variance_exceeded: bool = False,
) -> ShiftStatus:
    """
    Resolve a trigger against the current status.

    Inapplicable triggers return the current status unchanged. The result is
    always a member of get_allowed_transitions(current) or current itself.
    """
    status = coerce_status(current)
    try:
        event = ShiftTrigger(trigger)
    except ValueError:
        raise ValidationError(
            f"Invalid shift trigger '{trigger}'",
            field="trigger",
            value=trigger,
        ) from None

    if event is ShiftTrigger.SHIFT_OPENED and status is ShiftStatus.NOT_STARTED:
        return ShiftStatus.OPEN

    if event is ShiftTrigger.FIRST_ACTIVITY and status is ShiftStatus.OPEN:
        return ShiftStatus.ACTIVE

    if event is ShiftTrigger.CLOSING_INITIATED and status in WORKING_SHIFT_STATUSES:
        return ShiftStatus.CLOSING

    if event is ShiftTrigger.CASH_RECONCILED:
        if status is ShiftStatus.CLOSING:
            return ShiftStatus.VARIANCE_REVIEW if variance_exceeded else ShiftStatus.CLOSED
        if status is ShiftStatus.RECONCILING:
            return ShiftStatus.CLOSED

    if event is ShiftTrigger.VARIANCE_DETECTED and status is ShiftStatus.CLOSING:
        return ShiftStatus.VARIANCE_REVIEW

    if event is ShiftTrigger.VARIANCE_APPROVED and status is ShiftStatus.VARIANCE_REVIEW:
        return ShiftStatus.CLOSED

    if event is ShiftTrigger.DIRECT_CLOSE and status in WORKING_SHIFT_STATUSES:
        return ShiftStatus.CLOSED

    return status
