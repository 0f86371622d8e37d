"""
Shift lifecycle service tests.

Covers creation, opening, first-activity promotion, closing, cash
reconciliation against the variance thresholds, approval and audit side
effects.
"""

import logging

import pytest
from sqlalchemy.exc import SQLAlchemyError

from shift_settlement.models import AuditEntry, Shift
from shift_settlement.services import audit_service, shift_service
from shift_settlement.services.shift_state_machine import StateMachineViolation
from shift_settlement.validation import NotFoundError, ValidationError


def _actions(db_session, shift_id):
    rows = db_session.query(AuditEntry).filter_by(table_name="shifts", record_id=str(shift_id)).order_by(AuditEntry.id).all()
    return [row.action for row in rows]


# =============================================================================
# THRESHOLDS
# =============================================================================

class TestVarianceThreshold:

    @pytest.mark.parametrize("variance,expected,exceeded", [
        (600, 10000, True),      # $6 on $100: over $5 and over 1%
        (-600, 10000, True),     # shortages count the same
        (500, 10000, False),     # exactly $5 is not over
        (600, 100000, False),    # $6 on $1000 is only 0.6%
        (-1500, 100000, True),   # $15 on $1000 is 1.5%
        (1000, 100000, False),   # exactly 1%
        (400, 1000, False),      # 40% but under $5
        (501, 0, True),          # no expected cash: absolute threshold decides
        (0, 0, False),
    ])
    def test_requires_both_thresholds(self, variance, expected, exceeded):
        assert shift_service.variance_exceeds_threshold(variance, expected) is exceeded


# =============================================================================
# CREATE / OPEN
# =============================================================================

class TestCreateAndOpen:

    def test_create_starts_not_started(self, db_session, store):
        shift = shift_service.create_shift(store.id, "cashier-9", opening_cash_cents=2500)

        assert shift.status == "NOT_STARTED"
        assert shift.opening_cash_cents == 2500
        assert shift.expected_cash_cents == 2500
        assert shift.opened_at is None

    def test_create_rejects_unknown_store(self, db_session):
        with pytest.raises(NotFoundError) as exc:
            shift_service.create_shift(999, "cashier-9")
        assert exc.value.code == "STORE_NOT_FOUND"

    @pytest.mark.parametrize("cash", [-1, 1.5, "100", True])
    def test_create_rejects_bad_opening_cash(self, db_session, store, cash):
        with pytest.raises(ValidationError) as exc:
            shift_service.create_shift(store.id, "cashier-9", opening_cash_cents=cash)
        assert exc.value.field == "opening_cash_cents"

    def test_create_requires_cashier(self, db_session, store):
        with pytest.raises(ValidationError) as exc:
            shift_service.create_shift(store.id, "   ")
        assert exc.value.field == "cashier_id"

    def test_open_sets_opened_at_and_audits(self, db_session, open_shift):
        assert open_shift.status == "OPEN"
        assert open_shift.opened_at is not None
        assert _actions(db_session, open_shift.id) == ["SHIFT_CREATED", "SHIFT_OPENED"]

    def test_open_twice_is_invalid_transition(self, db_session, open_shift):
        with pytest.raises(StateMachineViolation) as exc:
            shift_service.open_shift(open_shift.id, "cashier-1")
        assert exc.value.code == "INVALID_TRANSITION"
        assert db_session.get(Shift, open_shift.id).status == "OPEN"

    def test_unknown_shift(self, db_session):
        with pytest.raises(NotFoundError) as exc:
            shift_service.open_shift(4242, "cashier-1")
        assert exc.value.code == "SHIFT_NOT_FOUND"


# =============================================================================
# ACTIVITY / CLOSING
# =============================================================================

class TestActivityAndClosing:

    def test_first_activity_promotes_open_to_active(self, db_session, open_shift):
        shift_service.record_first_activity(open_shift.id)
        db_session.commit()
        assert db_session.get(Shift, open_shift.id).status == "ACTIVE"

    def test_first_activity_is_no_op_when_active(self, db_session, open_shift):
        shift_service.record_first_activity(open_shift.id)
        shift_service.record_first_activity(open_shift.id)
        db_session.commit()
        assert db_session.get(Shift, open_shift.id).status == "ACTIVE"

    def test_first_activity_is_no_op_when_closing(self, db_session, open_shift):
        shift_service.initiate_closing(open_shift.id, "cashier-1")
        shift_service.record_first_activity(open_shift.id)
        db_session.commit()
        assert db_session.get(Shift, open_shift.id).status == "CLOSING"

    def test_initiate_closing(self, db_session, open_shift):
        shift = shift_service.initiate_closing(open_shift.id, "cashier-1")
        assert shift.status == "CLOSING"
        assert _actions(db_session, shift.id)[-1] == "SHIFT_CLOSING_INITIATED"

    def test_direct_close(self, db_session, open_shift):
        shift = shift_service.close_shift_directly(open_shift.id, "mgr-1")
        assert shift.status == "CLOSED"
        assert shift.closed_by == "mgr-1"
        assert shift.closed_at is not None

    def test_direct_close_from_closing_is_rejected(self, db_session, open_shift):
        shift_service.initiate_closing(open_shift.id, "cashier-1")
        with pytest.raises(StateMachineViolation) as exc:
            shift_service.close_shift_directly(open_shift.id, "mgr-1")
        assert exc.value.code == "SHIFT_INVALID_STATUS"
        assert db_session.get(Shift, open_shift.id).status == "CLOSING"


# =============================================================================
# CASH RECONCILIATION
# =============================================================================

class TestReconcileCash:

    def test_within_threshold_closes(self, db_session, open_shift):
        shift_service.initiate_closing(open_shift.id, "cashier-1")
        shift = shift_service.reconcile_cash(open_shift.id, 10300, "mgr-1")

        assert shift.status == "CLOSED"
        assert shift.variance_cents == 300
        assert shift.closing_cash_cents == 10300
        assert shift.closed_by == "mgr-1"
        assert _actions(db_session, shift.id)[-1] == "SHIFT_CLOSED"

    def test_over_threshold_goes_to_review(self, db_session, open_shift):
        shift_service.initiate_closing(open_shift.id, "cashier-1")
        shift = shift_service.reconcile_cash(open_shift.id, 9000, "mgr-1", variance_reason="  drawer short  ")

        assert shift.status == "VARIANCE_REVIEW"
        assert shift.variance_cents == -1000
        assert shift.variance_reason == "drawer short"
        assert shift.closed_at is None
        assert _actions(db_session, shift.id)[-1] == "SHIFT_VARIANCE_REVIEW"

    def test_reconcile_requires_closing_status(self, db_session, open_shift):
        with pytest.raises(StateMachineViolation) as exc:
            shift_service.reconcile_cash(open_shift.id, 10000, "mgr-1")
        assert exc.value.code == "SHIFT_INVALID_STATUS"
        assert db_session.get(Shift, open_shift.id).closing_cash_cents is None

    def test_reconcile_closed_shift_is_locked(self, db_session, open_shift):
        shift_service.close_shift_directly(open_shift.id, "mgr-1")
        with pytest.raises(StateMachineViolation) as exc:
            shift_service.reconcile_cash(open_shift.id, 10000, "mgr-1")
        assert exc.value.code == "SHIFT_LOCKED"

    def test_reconcile_rejects_negative_cash(self, db_session, open_shift):
        with pytest.raises(ValidationError):
            shift_service.reconcile_cash(open_shift.id, -5, "mgr-1")


class TestApproveVariance:

    @pytest.fixture
    def review_shift(self, db_session, open_shift):
        shift_service.initiate_closing(open_shift.id, "cashier-1")
        return shift_service.reconcile_cash(open_shift.id, 12000, "mgr-1")

    def test_approval_closes(self, db_session, review_shift):
        shift = shift_service.approve_variance(review_shift.id, "mgr-2", "Counted twice, surplus confirmed")

        assert shift.status == "CLOSED"
        assert shift.variance_approved_by == "mgr-2"
        assert shift.variance_approved_at is not None
        assert shift.variance_reason == "Counted twice, surplus confirmed"
        assert shift.closed_by == "mgr-2"

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_approval_requires_reason(self, db_session, review_shift, reason):
        with pytest.raises(ValidationError) as exc:
            shift_service.approve_variance(review_shift.id, "mgr-2", reason)
        assert exc.value.field == "reason"
        assert db_session.get(Shift, review_shift.id).status == "VARIANCE_REVIEW"

    def test_approval_outside_review_is_rejected(self, db_session, open_shift):
        with pytest.raises(StateMachineViolation) as exc:
            shift_service.approve_variance(open_shift.id, "mgr-2", "why not")
        assert exc.value.code == "SHIFT_INVALID_STATUS"

    def test_closed_shift_cannot_be_reapproved(self, db_session, review_shift):
        shift_service.approve_variance(review_shift.id, "mgr-2", "ok")
        with pytest.raises(StateMachineViolation) as exc:
            shift_service.approve_variance(review_shift.id, "mgr-2", "again")
        assert exc.value.code == "SHIFT_LOCKED"


# =============================================================================
# LISTING / AUDIT
# =============================================================================

class TestListAndAudit:

    def test_list_filters_by_status(self, db_session, store, open_shift):
        shift_service.create_shift(store.id, "cashier-2")

        assert [s.id for s in shift_service.list_shifts(status="OPEN")] == [open_shift.id]
        assert len(shift_service.list_shifts(store_id=store.id)) == 2

    def test_list_rejects_unknown_status(self, db_session):
        with pytest.raises(ValidationError):
            shift_service.list_shifts(status="PAUSED")

    def test_audit_failure_does_not_undo_change(self, db_session, open_shift, monkeypatch, caplog):
        def _broken_entry(**kwargs):
            raise SQLAlchemyError("audit sink unavailable")

        monkeypatch.setattr(audit_service, "AuditEntry", _broken_entry)

        with caplog.at_level(logging.ERROR):
            shift_service.close_shift_directly(open_shift.id, "mgr-1")

        assert db_session.get(Shift, open_shift.id).status == "CLOSED"
        assert "Audit write failed" in caplog.text
