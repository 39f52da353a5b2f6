# Overview: Pytest coverage for the purchase request state machine.

import pytest

from reconciler.models import PurchaseRequest
from reconciler.services.request_state_service import (
    ClaimConflictError,
    InvalidTransitionError,
    RequestNotFoundError,
    RequestStateMachine,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    can_transition,
)
from reconciler.validation import ValidationError

from conftest import make_request


class TestTransitions:
    def test_pending_can_move_to_either_terminal_state(self):
        assert can_transition(STATUS_PENDING, STATUS_APPROVED)
        assert can_transition(STATUS_PENDING, STATUS_REJECTED)

    def test_terminal_states_have_no_exits(self):
        for terminal in (STATUS_APPROVED, STATUS_REJECTED):
            for target in (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED):
                assert not can_transition(terminal, target)

    def test_unknown_status_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            can_transition("pending", STATUS_APPROVED)


class TestClaim:
    def test_claim_moves_status_and_bumps_version(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)

        machine.claim(pr.id, STATUS_APPROVED, actor_user_id=admin_a.id)
        db_session.commit()

        refreshed = db_session.get(PurchaseRequest, pr.id)
        assert refreshed.status == STATUS_APPROVED
        assert refreshed.version_id == 2
        assert refreshed.decided_by_user_id == admin_a.id
        assert refreshed.decided_at is not None

    def test_second_claim_conflicts_with_current_status(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)
        machine.claim(pr.id, STATUS_APPROVED, actor_user_id=admin_a.id)
        db_session.commit()

        with pytest.raises(ClaimConflictError) as excinfo:
            machine.claim(pr.id, STATUS_REJECTED, actor_user_id=admin_a.id, rejection_reason="late")
        assert excinfo.value.current_status == STATUS_APPROVED
        assert excinfo.value.expected_status == STATUS_PENDING

    def test_reject_requires_reason(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)

        with pytest.raises(ValidationError):
            machine.claim(pr.id, STATUS_REJECTED, actor_user_id=admin_a.id, rejection_reason="   ")
        assert machine.current_status(pr.id) == STATUS_PENDING

    def test_reject_stores_reason_with_status(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)

        machine.claim(pr.id, STATUS_REJECTED, actor_user_id=admin_a.id, rejection_reason="  out of season ")
        db_session.commit()

        refreshed = db_session.get(PurchaseRequest, pr.id)
        assert refreshed.status == STATUS_REJECTED
        assert refreshed.rejection_reason == "out of season"

    def test_claim_unknown_request(self, db_session, admin_a):
        with pytest.raises(RequestNotFoundError):
            RequestStateMachine(db_session).claim(424242, STATUS_APPROVED, actor_user_id=admin_a.id)

    def test_claim_from_terminal_expected_status_is_invalid(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        with pytest.raises(InvalidTransitionError):
            RequestStateMachine(db_session).claim(
                pr.id, STATUS_PENDING, actor_user_id=admin_a.id, expected_status=STATUS_APPROVED
            )


class TestRevertAndSnapshot:
    def test_revert_reopens_unapplied_claim(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)
        machine.claim(pr.id, STATUS_APPROVED, actor_user_id=admin_a.id)
        db_session.commit()

        assert machine.revert_claim(pr.id) is True
        db_session.commit()

        refreshed = db_session.get(PurchaseRequest, pr.id)
        assert refreshed.status == STATUS_PENDING
        assert refreshed.decided_by_user_id is None
        assert refreshed.version_id == 3

    def test_completed_approval_cannot_be_reverted(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)
        machine.claim(pr.id, STATUS_APPROVED, actor_user_id=admin_a.id)
        machine.record_snapshot(
            pr.id,
            admin_stock_before=10, admin_stock_after=8,
            client_stock_before=0, client_stock_after=2,
            client_record_created=True, points_credited=10,
        )
        db_session.commit()

        assert machine.revert_claim(pr.id) is False
        assert machine.current_status(pr.id) == STATUS_APPROVED
        assert machine.list_incomplete() == []

    def test_snapshot_only_written_once(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)
        machine.claim(pr.id, STATUS_APPROVED, actor_user_id=admin_a.id)
        kwargs = dict(
            admin_stock_before=10, admin_stock_after=8,
            client_stock_before=0, client_stock_after=2,
            client_record_created=True, points_credited=10,
        )
        machine.record_snapshot(pr.id, **kwargs)
        db_session.commit()

        with pytest.raises(InvalidTransitionError):
            machine.record_snapshot(pr.id, **kwargs)

    def test_snapshot_refused_for_pending_request(self, db_session, client_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        with pytest.raises(InvalidTransitionError):
            RequestStateMachine(db_session).record_snapshot(
                pr.id,
                admin_stock_before=10, admin_stock_after=8,
                client_stock_before=0, client_stock_after=2,
                client_record_created=True, points_credited=10,
            )

    def test_incomplete_listing_and_error_flag(self, db_session, org_a, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        machine = RequestStateMachine(db_session)
        machine.claim(pr.id, STATUS_APPROVED, actor_user_id=admin_a.id)
        machine.mark_incomplete(pr.id, "loyalty_credit: boom")
        db_session.commit()

        incomplete = machine.list_incomplete(org_a.id)
        assert [r.id for r in incomplete] == [pr.id]
        assert incomplete[0].reconciliation_error == "loyalty_credit: boom"
        assert machine.list_incomplete(org_a.id + 1000) == []
