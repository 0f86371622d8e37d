"""
Shift state machine tests.

Verifies the transition table, the CLOSED lock, status predicates and
trigger resolution. Everything here is pure; no database fixtures needed.
"""

import itertools

import pytest

from shift_settlement.services.shift_state_machine import (
    ShiftStatus,
    ShiftTrigger,
    StateMachineViolation,
    VALID_TRANSITIONS,
    can_activate_pack,
    can_close_pack,
    can_transition,
    determine_next_status,
    get_allowed_transitions,
    get_pack_activation_error,
    get_status_description,
    is_unclosed_status,
    is_working_status,
    validate_transition,
)
from shift_settlement.validation import ValidationError


S = ShiftStatus

EXPECTED_EDGES = {
    (S.NOT_STARTED, S.OPEN),
    (S.OPEN, S.ACTIVE),
    (S.OPEN, S.CLOSING),
    (S.OPEN, S.CLOSED),
    (S.ACTIVE, S.CLOSING),
    (S.ACTIVE, S.CLOSED),
    (S.CLOSING, S.CLOSED),
    (S.CLOSING, S.VARIANCE_REVIEW),
    (S.RECONCILING, S.CLOSED),
    (S.VARIANCE_REVIEW, S.CLOSED),
}


# =============================================================================
# TRANSITION TABLE
# =============================================================================

class TestTransitionTable:

    def test_table_covers_every_status(self):
        assert set(VALID_TRANSITIONS) == set(ShiftStatus)

    def test_closed_is_terminal(self):
        assert get_allowed_transitions(S.CLOSED) == ()

    def test_accepts_string_values(self):
        assert get_allowed_transitions("CLOSING") == (S.CLOSED, S.VARIANCE_REVIEW)

    @pytest.mark.parametrize("source,target", list(itertools.product(ShiftStatus, ShiftStatus)))
    def test_validate_matches_table(self, source, target):
        if (source, target) in EXPECTED_EDGES:
            assert can_transition(source, target)
            validate_transition(source, target)
            return

        assert not can_transition(source, target)
        with pytest.raises(StateMachineViolation) as exc:
            validate_transition(source, target)
        expected_code = "SHIFT_LOCKED" if source is S.CLOSED else "INVALID_TRANSITION"
        assert exc.value.code == expected_code
        assert exc.value.current_status is source
        assert exc.value.attempted_status is target

    @pytest.mark.parametrize("target", list(ShiftStatus))
    def test_closed_always_reports_locked(self, target):
        with pytest.raises(StateMachineViolation) as exc:
            validate_transition("CLOSED", target)
        assert exc.value.code == "SHIFT_LOCKED"

    def test_invalid_transition_lists_allowed_targets(self):
        with pytest.raises(StateMachineViolation) as exc:
            validate_transition(S.NOT_STARTED, S.CLOSED)
        assert exc.value.allowed == (S.OPEN,)
        assert exc.value.to_dict()["allowed"] == ["OPEN"]

    def test_unknown_status_is_validation_error(self):
        with pytest.raises(ValidationError) as exc:
            validate_transition("PAUSED", S.OPEN)
        assert exc.value.field == "status"


# =============================================================================
# PREDICATES
# =============================================================================

class TestStatusPredicates:

    @pytest.mark.parametrize("status", list(ShiftStatus))
    def test_working(self, status):
        assert is_working_status(status) == (status in (S.OPEN, S.ACTIVE))

    @pytest.mark.parametrize("status", list(ShiftStatus))
    def test_unclosed(self, status):
        assert is_unclosed_status(status) == (status not in (S.NOT_STARTED, S.CLOSED))

    @pytest.mark.parametrize("status", list(ShiftStatus))
    def test_can_activate_pack(self, status):
        assert can_activate_pack(status) == (status in (S.OPEN, S.ACTIVE))

    @pytest.mark.parametrize("status", list(ShiftStatus))
    def test_can_close_pack(self, status):
        assert can_close_pack(status) == (status in (S.OPEN, S.ACTIVE, S.CLOSING))

    @pytest.mark.parametrize("status", list(ShiftStatus))
    def test_activation_error_only_when_blocked(self, status):
        message = get_pack_activation_error(status)
        if can_activate_pack(status):
            assert message is None
        else:
            assert message.startswith("Cannot activate pack")

    def test_every_status_has_description(self):
        for status in ShiftStatus:
            assert get_status_description(status)


# =============================================================================
# TRIGGERS
# =============================================================================

class TestDetermineNextStatus:

    def test_cash_reconciled_with_variance_goes_to_review(self):
        assert determine_next_status(S.CLOSING, "CASH_RECONCILED", variance_exceeded=True) is S.VARIANCE_REVIEW

    def test_cash_reconciled_without_variance_closes(self):
        assert determine_next_status(S.CLOSING, "CASH_RECONCILED", variance_exceeded=False) is S.CLOSED

    def test_reconciling_always_closes(self):
        assert determine_next_status(S.RECONCILING, ShiftTrigger.CASH_RECONCILED, variance_exceeded=True) is S.CLOSED

    @pytest.mark.parametrize("current,trigger,expected", [
        (S.NOT_STARTED, ShiftTrigger.SHIFT_OPENED, S.OPEN),
        (S.OPEN, ShiftTrigger.FIRST_ACTIVITY, S.ACTIVE),
        (S.OPEN, ShiftTrigger.CLOSING_INITIATED, S.CLOSING),
        (S.ACTIVE, ShiftTrigger.CLOSING_INITIATED, S.CLOSING),
        (S.CLOSING, ShiftTrigger.VARIANCE_DETECTED, S.VARIANCE_REVIEW),
        (S.VARIANCE_REVIEW, ShiftTrigger.VARIANCE_APPROVED, S.CLOSED),
        (S.OPEN, ShiftTrigger.DIRECT_CLOSE, S.CLOSED),
        (S.ACTIVE, ShiftTrigger.DIRECT_CLOSE, S.CLOSED),
    ])
    def test_applicable_triggers(self, current, trigger, expected):
        assert determine_next_status(current, trigger) is expected

    @pytest.mark.parametrize("current,trigger", [
        (S.ACTIVE, ShiftTrigger.FIRST_ACTIVITY),
        (S.CLOSING, ShiftTrigger.FIRST_ACTIVITY),
        (S.OPEN, ShiftTrigger.SHIFT_OPENED),
        (S.OPEN, ShiftTrigger.VARIANCE_APPROVED),
        (S.CLOSING, ShiftTrigger.DIRECT_CLOSE),
        (S.CLOSED, ShiftTrigger.CASH_RECONCILED),
        (S.CLOSED, ShiftTrigger.DIRECT_CLOSE),
    ])
    def test_inapplicable_triggers_are_no_ops(self, current, trigger):
        assert determine_next_status(current, trigger) is current

    @pytest.mark.parametrize("current,trigger,exceeded", list(itertools.product(
        ShiftStatus, ShiftTrigger, (False, True),
    )))
    def test_result_is_current_or_allowed(self, current, trigger, exceeded):
        result = determine_next_status(current, trigger, variance_exceeded=exceeded)
        assert result is current or result in get_allowed_transitions(current)

    def test_unknown_trigger_is_validation_error(self):
        with pytest.raises(ValidationError) as exc:
            determine_next_status(S.OPEN, "LUNCH_BREAK")
        assert exc.value.field == "trigger"
