# Overview: Pytest coverage for the append-only inventory ledger.

from datetime import timedelta

import pytest

from reconciler.immutability import ImmutabilityViolationError
from reconciler.models import InventoryLedgerEntry
from reconciler.services.ledger_service import (
    ENTRY_ALLOCATION,
    ENTRY_DEDUCTION,
    LedgerAppendError,
    LedgerEntryDraft,
    LedgerStore,
    movement_entries,
)
from reconciler.time_utils import utcnow
from reconciler.validation import ValidationError

from conftest import make_request


def _movement(pr, admin_id, *, admin_before=10, client_before=0):
    return movement_entries(
        org_id=pr.org_id,
        purchase_request_id=pr.id,
        product_id=pr.product_id,
        client_id=pr.client_id,
        quantity=pr.quantity,
        actor_user_id=admin_id,
        admin_before=admin_before,
        admin_after=admin_before - pr.quantity,
        client_before=client_before,
        client_after=client_before + pr.quantity,
    )


class TestDrafts:
    def test_movement_pair_balances(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        deduction, allocation = _movement(pr, admin_a.id)

        assert deduction.entry_kind == ENTRY_DEDUCTION
        assert allocation.entry_kind == ENTRY_ALLOCATION
        assert (deduction.previous_quantity - deduction.new_quantity) == (
            allocation.new_quantity - allocation.previous_quantity
        ) == 4

    def test_delta_must_match_quantity(self):
        draft = LedgerEntryDraft(
            org_id=1, purchase_request_id=1, entry_kind=ENTRY_DEDUCTION,
            product_id=1, client_id=1, quantity=4,
            previous_quantity=10, new_quantity=7, actor_user_id=1,
        )
        with pytest.raises(ValidationError):
            draft.validate()

    def test_unknown_kind(self):
        draft = LedgerEntryDraft(
            org_id=1, purchase_request_id=1, entry_kind="ADJUSTMENT",
            product_id=1, client_id=1, quantity=1,
            previous_quantity=1, new_quantity=2, actor_user_id=1,
        )
        with pytest.raises(ValidationError):
            draft.validate()


class TestAppend:
    def test_batch_shares_timestamp(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        store = LedgerStore(db_session)

        rows = store.append(_movement(pr, admin_a.id))
        db_session.commit()

        assert len(rows) == 2
        assert rows[0].occurred_at == rows[1].occurred_at
        assert [e.entry_kind for e in store.entries_for_request(pr.id)] == [ENTRY_DEDUCTION, ENTRY_ALLOCATION]

    def test_duplicate_append_is_refused(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        store = LedgerStore(db_session)
        store.append(_movement(pr, admin_a.id))
        db_session.commit()

        with pytest.raises(LedgerAppendError):
            store.append(_movement(pr, admin_a.id))
        db_session.rollback()

        assert len(store.entries_for_request(pr.id)) == 2

    def test_caller_rollback_discards_batch(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        store = LedgerStore(db_session)

        store.append(_movement(pr, admin_a.id))
        db_session.rollback()

        assert store.entries_for_request(pr.id) == []

    def test_invalid_draft_writes_nothing(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 4)
        good, _ = _movement(pr, admin_a.id)
        bad = LedgerEntryDraft(
            org_id=pr.org_id, purchase_request_id=pr.id, entry_kind=ENTRY_ALLOCATION,
            product_id=pr.product_id, client_id=pr.client_id, quantity=4,
            previous_quantity=0, new_quantity=3, actor_user_id=admin_a.id,
        )
        store = LedgerStore(db_session)

        with pytest.raises(ValidationError):
            store.append([good, bad])
        assert store.entries_for_request(pr.id) == []

    def test_empty_batch(self, db_session):
        with pytest.raises(ValidationError):
            LedgerStore(db_session).append([])


class TestHistory:
    def test_newest_first_and_limit(self, db_session, client_a, client_a2, admin_a, product_a):
        first = make_request(db_session, client_a, product_a, 2)
        second = make_request(db_session, client_a2, product_a, 3)
        store = LedgerStore(db_session)
        earlier = utcnow() - timedelta(minutes=5)
        store.append(_movement(first, admin_a.id), occurred_at=earlier)
        store.append(_movement(second, admin_a.id, admin_before=8), occurred_at=utcnow())
        db_session.commit()

        history = store.history_for(product_id=product_a.id)
        assert [e.purchase_request_id for e in history] == [second.id, second.id, first.id, first.id]
        # Same timestamp: higher id first
        assert history[0].entry_kind == ENTRY_ALLOCATION

        assert len(store.history_for(product_id=product_a.id, limit=1)) == 1
        assert [e.purchase_request_id for e in store.history_for(client_id=client_a.id)] == [first.id]

    def test_limit_is_clamped(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        store = LedgerStore(db_session, max_history_limit=1)
        store.append(_movement(pr, admin_a.id))
        db_session.commit()

        assert len(store.history_for(product_id=product_a.id, limit=1000)) == 1
        assert len(store.history_for(product_id=product_a.id, limit=0)) == 1

    def test_exactly_one_key_required(self, db_session):
        store = LedgerStore(db_session)
        with pytest.raises(ValidationError):
            store.history_for()
        with pytest.raises(ValidationError):
            store.history_for(product_id=1, client_id=1)


class TestImmutability:
    def test_entries_cannot_be_updated(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        LedgerStore(db_session).append(_movement(pr, admin_a.id))
        db_session.commit()

        entry = db_session.query(InventoryLedgerEntry).first()
        entry.quantity = 99
        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
        db_session.rollback()

    def test_entries_cannot_be_deleted(self, db_session, client_a, admin_a, product_a):
        pr = make_request(db_session, client_a, product_a, 2)
        LedgerStore(db_session).append(_movement(pr, admin_a.id))
        db_session.commit()

        entry = db_session.query(InventoryLedgerEntry).first()
        db_session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
        db_session.rollback()
