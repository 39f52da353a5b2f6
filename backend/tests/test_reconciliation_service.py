# Overview: Pytest coverage for purchase request approval, rejection and manual reconciliation.

"""
Reconciliation Orchestrator Tests

Covers:
1. Approval moves stock, allocates to the client, writes two ledger entries,
   credits points and stores the snapshot, all exactly once
2. Repeated decisions return ALREADY_PROCESSED without side effects
3. Insufficient stock reverts the claim (request stays retryable)
4. Failures after the stock move leave a flagged, incomplete approval
   with nothing else applied; release_claim makes it retryable
5. Notification failures never undo a decision
"""

from datetime import timedelta

import pytest

from reconciler.extensions import db
from reconciler.models import (
    ClientInventory,
    InventoryLedgerEntry,
    LoyaltyTransaction,
    NotificationEvent,
    Product,
    PurchaseRequest,
)
from reconciler.services.loyalty_service import LoyaltyLedger
from reconciler.services.notification_service import (
    EVENT_REQUEST_APPROVED,
    EVENT_REQUEST_REJECTED,
)
from reconciler.services.reconciliation_service import (
    OUTCOME_ALREADY_PROCESSED,
    OUTCOME_APPROVED,
    OUTCOME_REJECTED,
    ReconciliationIncompleteError,
    ReconciliationOrchestrator,
    approve_purchase_request,
)
from reconciler.services.request_state_service import RequestNotFoundError
from reconciler.services.stock_service import InsufficientStockError, InventoryRepository
from reconciler.time_utils import utcnow
from reconciler.validation import ConflictError, ValidationError

from conftest import make_deal, make_product, make_request


def _stock(db_session, product_id):
    return InventoryRepository(db_session).current_stock(product_id)


def _client_qty(db_session, client_id, product_id):
    return InventoryRepository(db_session).client_quantity(client_id, product_id)


def _ledger_count(db_session, request_id=None):
    q = db_session.query(InventoryLedgerEntry)
    if request_id is not None:
        q = q.filter(InventoryLedgerEntry.purchase_request_id == request_id)
    return q.count()


def _request(db_session, request_id):
    db_session.expire_all()
    return db_session.get(PurchaseRequest, request_id)


class ExplodingLoyalty(LoyaltyLedger):
    def credit(self, *args, **kwargs):
        raise RuntimeError("loyalty store unavailable")


class ExplodingNotifier:
    def emit(self, event):
        raise ConnectionError("notification gateway down")


class TestApprove:
    def test_first_allocation_scenario(self, db_session, orchestrator, notifier, client_a, admin_a, product_a):
        """stock 10, quantity 4 -> stock 6, new client record of 4, two entries, 4 x points."""
        pr = make_request(db_session, client_a, product_a, 4)

        result = orchestrator.approve(pr.id, admin_a.id)

        assert result.outcome == OUTCOME_APPROVED
        snap = result.snapshot
        assert (snap.admin_stock_before, snap.admin_stock_after) == (10, 6)
        assert (snap.client_stock_before, snap.client_stock_after) == (0, 4)
        assert snap.client_record_created is True
        assert snap.points_credited == 20
        assert snap.admin_stock_before - snap.admin_stock_after == snap.client_stock_after - snap.client_stock_before

        assert _stock(db_session, product_a.id) == 6
        assert _client_qty(db_session, client_a.id, product_a.id) == 4
        assert _ledger_count(db_session, pr.id) == 2
        assert LoyaltyLedger(db_session).balance(client_a.id) == 20

        stored = _request(db_session, pr.id)
        assert stored.status == "APPROVED"
        assert stored.is_complete
        assert stored.snapshot_dict()["points_credited"] == 20
        assert stored.reconciliation_error is None

        assert [e.type for e in notifier.events] == [EVENT_REQUEST_APPROVED]
        assert notifier.events[0].snapshot["admin_stock_after"] == 6

    def test_sequential_requests_drain_stock(self, db_session, orchestrator, client_a, client_a2, admin_a, product_a):
        first = make_request(db_session, client_a, product_a, 4)
        second = make_request(db_session, client_a2, product_a, 4)
        third = make_request(db_session, client_a, product_a, 5)

        orchestrator.approve(first.id, admin_a.id)
        result = orchestrator.approve(second.id, admin_a.id)
        assert (result.snapshot.admin_stock_before, result.snapshot.admin_stock_after) == (6, 2)

        with pytest.raises(InsufficientStockError) as excinfo:
            orchestrator.approve(third.id, admin_a.id)

        assert excinfo.value.retryable is True
        assert _stock(db_session, product_a.id) == 2
        stored = _request(db_session, third.id)
        assert stored.status == "PENDING"
        assert stored.decided_by_user_id is None
        assert _ledger_count(db_session, third.id) == 0
        assert _client_qty(db_session, client_a.id, product_a.id) == 4

    def test_insufficient_stock_is_retryable_after_restock(self, db_session, orchestrator, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 12)

        with pytest.raises(InsufficientStockError):
            orchestrator.approve(pr.id, admin_a.id)
        assert LoyaltyLedger(db_session).balance(client_a.id) == 0

        InventoryRepository(db_session).restock(product_a.id, 5)
        db_session.commit()

        result = orchestrator.approve(pr.id, admin_a.id)
        assert result.outcome == OUTCOME_APPROVED
        assert result.snapshot.admin_stock_after == 3

    def test_existing_client_record_is_incremented(self, db_session, orchestrator, client_a, admin_a, product_a):
        orchestrator.approve(make_request(db_session, client_a, product_a, 3).id, admin_a.id)

        result = orchestrator.approve(make_request(db_session, client_a, product_a, 2).id, admin_a.id)

        assert result.snapshot.client_record_created is False
        assert (result.snapshot.client_stock_before, result.snapshot.client_stock_after) == (3, 5)
        assert db_session.query(ClientInventory).filter_by(client_id=client_a.id).count() == 1

    def test_second_approve_is_already_processed(self, db_session, orchestrator, notifier, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        orchestrator.approve(pr.id, admin_a.id)

        again = orchestrator.approve(pr.id, admin_a.id)

        assert again.outcome == OUTCOME_ALREADY_PROCESSED
        assert again.already_processed
        assert again.status == "APPROVED"
        assert again.snapshot is None
        assert _stock(db_session, product_a.id) == 6
        assert _client_qty(db_session, client_a.id, product_a.id) == 4
        assert _ledger_count(db_session) == 2
        assert db_session.query(LoyaltyTransaction).count() == 1
        assert len(notifier.events) == 1

    def test_approve_after_reject_is_already_processed(self, db_session, orchestrator, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        orchestrator.reject(pr.id, admin_a.id, "out of season")

        result = orchestrator.approve(pr.id, admin_a.id)

        assert result.outcome == OUTCOME_ALREADY_PROCESSED
        assert result.status == "REJECTED"
        assert _stock(db_session, product_a.id) == 10

    def test_unknown_request(self, db_session, orchestrator, admin_a):
        with pytest.raises(RequestNotFoundError):
            orchestrator.approve(424242, admin_a.id)

    def test_deal_bonus_added_when_threshold_met(self, db_session, orchestrator, client_a, admin_a, product_a):
        make_deal(db_session, product_a, min_quantity=4, bonus_points=30)
        pr = make_request(db_session, client_a, product_a, 4)

        result = orchestrator.approve(pr.id, admin_a.id)

        assert result.snapshot.points_credited == 4 * 5 + 30
        assert LoyaltyLedger(db_session).balance(client_a.id) == 50

    def test_deal_expired_before_approval_gives_no_bonus(self, db_session, orchestrator, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        make_deal(
            db_session, product_a, min_quantity=1, bonus_points=30,
            starts_at=utcnow() - timedelta(days=7), ends_at=utcnow() - timedelta(seconds=1),
        )

        result = orchestrator.approve(pr.id, admin_a.id)

        assert result.snapshot.points_credited == 20
        assert result.snapshot.bonus_deal_id is None

    def test_zero_points_skips_credit(self, db_session, orchestrator, org_a, client_a, admin_a):
        product = make_product(db_session, org_a, sku="NOPTS", points=0)
        pr = make_request(db_session, client_a, product, 2)

        result = orchestrator.approve(pr.id, admin_a.id)

        assert result.snapshot.points_credited == 0
        assert db_session.query(LoyaltyTransaction).count() == 0
        assert _request(db_session, pr.id).is_complete

    def test_loyalty_credit_references_request(self, db_session, orchestrator, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 1)
        orchestrator.approve(pr.id, admin_a.id)

        tx = LoyaltyLedger(db_session).credited_for(client_a.id, pr.id)
        assert tx is not None
        assert tx.reason == "purchase_request_approved"
        assert tx.product_id == product_a.id


class TestReject:
    def test_reject_scenario(self, db_session, orchestrator, notifier, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)

        result = orchestrator.reject(pr.id, admin_a.id, "out of season")

        assert result.outcome == OUTCOME_REJECTED
        assert result.rejection_reason == "out of season"
        stored = _request(db_session, pr.id)
        assert stored.status == "REJECTED"
        assert stored.rejection_reason == "out of season"
        assert stored.snapshot_dict() is None
        assert _ledger_count(db_session) == 0
        assert _stock(db_session, product_a.id) == 10
        assert _client_qty(db_session, client_a.id, product_a.id) is None
        assert notifier.events[0].type == EVENT_REQUEST_REJECTED
        assert notifier.events[0].reason == "out of season"

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reason_required(self, db_session, orchestrator, notifier, client_a, admin_a, product_a, reason):
        pr = make_request(db_session, client_a, product_a, 4)

        with pytest.raises(ValidationError):
            orchestrator.reject(pr.id, admin_a.id, reason)

        assert _request(db_session, pr.id).status == "PENDING"
        assert notifier.events == []

    def test_unknown_request_checked_before_reason(self, db_session, orchestrator, admin_a):
        with pytest.raises(RequestNotFoundError):
            orchestrator.reject(424242, admin_a.id, "")

    def test_second_reject_is_already_processed(self, db_session, orchestrator, notifier, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        orchestrator.reject(pr.id, admin_a.id, "out of season")

        again = orchestrator.reject(pr.id, admin_a.id, "duplicate click")

        assert again.outcome == OUTCOME_ALREADY_PROCESSED
        assert _request(db_session, pr.id).rejection_reason == "out of season"
        assert len(notifier.events) == 1


class TestPartialFailure:
    def test_failure_after_stock_move_leaves_flagged_claim(self, db_session, notifier, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        broken = ReconciliationOrchestrator(db_session, loyalty=ExplodingLoyalty(db_session), notifier=notifier)

        with pytest.raises(ReconciliationIncompleteError) as excinfo:
            broken.approve(pr.id, admin_a.id)

        assert excinfo.value.request_id == pr.id
        assert excinfo.value.step == "loyalty_credit"
        stored = _request(db_session, pr.id)
        assert stored.status == "APPROVED"
        assert stored.completed_at is None
        assert stored.reconciliation_error.startswith("loyalty_credit")
        # The unit of work rolled back as a whole
        assert _stock(db_session, product_a.id) == 10
        assert _client_qty(db_session, client_a.id, product_a.id) is None
        assert _ledger_count(db_session) == 0
        assert notifier.events == []
        assert [r.id for r in broken.list_incomplete()] == [pr.id]

    def test_release_then_approve(self, db_session, orchestrator, notifier, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        broken = ReconciliationOrchestrator(db_session, loyalty=ExplodingLoyalty(db_session), notifier=notifier)
        with pytest.raises(ReconciliationIncompleteError):
            broken.approve(pr.id, admin_a.id)

        assert orchestrator.release_claim(pr.id, admin_a.id) is True
        stored = _request(db_session, pr.id)
        assert stored.status == "PENDING"
        assert stored.reconciliation_error is None

        result = orchestrator.approve(pr.id, admin_a.id)
        assert result.outcome == OUTCOME_APPROVED
        assert orchestrator.list_incomplete() == []

    def test_release_refused_once_ledger_entries_exist(self, db_session, orchestrator, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        orchestrator.approve(pr.id, admin_a.id)

        with pytest.raises(ConflictError):
            orchestrator.release_claim(pr.id, admin_a.id)
        assert _request(db_session, pr.id).status == "APPROVED"

    def test_release_of_pending_request_is_noop(self, db_session, orchestrator, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        assert orchestrator.release_claim(pr.id, admin_a.id) is False

    def test_notification_failure_keeps_approval(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        orchestrator = ReconciliationOrchestrator(db_session, notifier=ExplodingNotifier())

        result = orchestrator.approve(pr.id, admin_a.id)

        assert result.outcome == OUTCOME_APPROVED
        assert _request(db_session, pr.id).is_complete
        assert _stock(db_session, product_a.id) == 6

    def test_notification_failure_keeps_rejection(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        orchestrator = ReconciliationOrchestrator(db_session, notifier=ExplodingNotifier())

        result = orchestrator.reject(pr.id, admin_a.id, "discontinued")

        assert result.outcome == OUTCOME_REJECTED
        assert _request(db_session, pr.id).status == "REJECTED"


class TestDefaultWiring:
    def test_outbox_records_approval_event(self, app, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)

        result = approve_purchase_request(pr.id, admin_a.id)

        assert result.outcome == OUTCOME_APPROVED
        rows = db.session.query(NotificationEvent).all()
        assert len(rows) == 1
        payload = rows[0].to_dict()["payload"]
        assert payload["type"] == EVENT_REQUEST_APPROVED
        assert payload["request_id"] == pr.id
        assert payload["snapshot"]["points_credited"] == 10
        assert rows[0].recipient_user_id == client_a.id

    def test_product_row_is_consistent_after_approval(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        approve_purchase_request(pr.id, admin_a.id)

        db_session.expire_all()
        assert db_session.get(Product, product_a.id).stock == 8
