# Overview: Reconciliation orchestrator; approves or rejects purchase requests exactly once.

"""
Purchase Request Reconciliation

================================================================================
APPROVE(request_id, approver_id)
================================================================================
    1. load request                        -> RequestNotFoundError
    2. claim PENDING -> APPROVED, COMMIT   -> conflict = ALREADY_PROCESSED outcome
    ---- one transaction ----------------------------------------------------
    3. decrement admin stock               -> InsufficientStockError:
                                              rollback, revert claim, re-raise
    4. upsert client inventory
    5. append DEDUCTION + ALLOCATION ledger entries
    6. credit loyalty points (idempotent by request id)
    7. write result snapshot (completion marker)
    ---- COMMIT -------------------------------------------------------------
    8. emit notification (failure is logged, never rolls back 1-7)

The claim is committed on its own so it is the single serialization point:
of N concurrent approvals exactly one gets past step 2. Everything after it
is reached by one caller only, so the stock and point updates need no lock
beyond their own conditional UPDATEs.

Steps 3-7 commit together. Any failure other than insufficient stock leaves
the request APPROVED without a snapshot and flagged with
reconciliation_error; it is surfaced as ReconciliationIncompleteError for
manual reconciliation (see list_incomplete / release_claim).

================================================================================
REJECT(request_id, approver_id, reason)
================================================================================
    1. load request, 2. validate reason, 3. claim PENDING -> REJECTED with the
    reason in the same UPDATE, COMMIT, 4. emit notification.
    No stock, client inventory, ledger or loyalty writes.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, asdict

from flask import current_app

from ..extensions import db
from ..time_utils import to_utc_z
from ..validation import ConflictError, require_reason
from .catalog_service import ProductCatalog
from .concurrency import run_with_retry
from .ledger_service import LedgerStore, movement_entries
from .loyalty_service import LoyaltyLedger, REF_PURCHASE_REQUEST
from .notification_service import NotificationEmitter, approved_event, build_emitter, rejected_event
from .request_state_service import (
    ClaimConflictError,
    RequestStateMachine,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
)
from .stock_service import InsufficientStockError, InventoryRepository


OUTCOME_APPROVED = "APPROVED"
OUTCOME_REJECTED = "REJECTED"
OUTCOME_ALREADY_PROCESSED = "ALREADY_PROCESSED"


class ReconciliationIncompleteError(RuntimeError):
    """
    The approval was claimed but its effects could not be applied.

    The request stays APPROVED without a snapshot and needs an operator.
    """

    def __init__(self, request_id: int, step: str, cause: Exception | None = None):
        self.request_id = request_id
        self.step = step
        self.cause = cause
        super().__init__(f"Purchase request {request_id} approval incomplete at step '{step}': {cause}")


@dataclass(frozen=True)
class ApprovalSnapshot:
    request_id: int
    product_id: int
    client_id: int
    quantity: int
    admin_stock_before: int
    admin_stock_after: int
    client_stock_before: int
    client_stock_after: int
    client_record_created: bool
    points_credited: int
    bonus_deal_id: int | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DecisionResult:
    outcome: str
    request_id: int
    status: str
    snapshot: ApprovalSnapshot | None = None
    rejection_reason: str | None = None

    @property
    def already_processed(self) -> bool:
        return self.outcome == OUTCOME_ALREADY_PROCESSED

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "request_id": self.request_id,
            "status": self.status,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "rejection_reason": self.rejection_reason,
        }


class ReconciliationOrchestrator:
    def __init__(
        self,
        session,
        *,
        requests: RequestStateMachine | None = None,
        inventory: InventoryRepository | None = None,
        ledger: LedgerStore | None = None,
        loyalty: LoyaltyLedger | None = None,
        catalog: ProductCatalog | None = None,
        notifier: NotificationEmitter | None = None,
        approval_reason: str = "purchase_request_approved",
    ):
        self.session = session
        self.requests = requests or RequestStateMachine(session)
        self.inventory = inventory or InventoryRepository(session)
        self.ledger = ledger or LedgerStore(session)
        self.loyalty = loyalty or LoyaltyLedger(session)
        self.catalog = catalog or ProductCatalog(session)
        self.notifier = notifier
        self.approval_reason = approval_reason

    # ------------------------------------------------------------------
    # approve
    # ------------------------------------------------------------------

    def approve(self, request_id: int, approver_id: int) -> DecisionResult:
        purchase_request = self.requests.get(request_id)
        org_id = purchase_request.org_id
        product_id = purchase_request.product_id
        client_id = purchase_request.client_id
        quantity = purchase_request.quantity

        conflict = self._claim(request_id, STATUS_APPROVED, approver_id)
        if conflict is not None:
            return conflict

        step = "decrement_source"

        def _apply() -> ApprovalSnapshot:
            nonlocal step
            step = "decrement_source"
            source = self.inventory.decrement_source(product_id, quantity)

            step = "upsert_destination"
            destination = self.inventory.upsert_destination(client_id, product_id, quantity, org_id=org_id)

            step = "ledger_append"
            self.ledger.append(movement_entries(
                org_id=org_id,
                purchase_request_id=request_id,
                product_id=product_id,
                client_id=client_id,
                quantity=quantity,
                actor_user_id=approver_id,
                admin_before=source.previous,
                admin_after=source.new,
                client_before=destination.previous,
                client_after=destination.new,
            ))

            step = "loyalty_credit"
            quote = self.catalog.loyalty_points_for(product_id, quantity)
            points = quote.total
            if points > 0:
                self.loyalty.credit(
                    client_id,
                    points,
                    self.approval_reason,
                    request_id,
                    reference_type=REF_PURCHASE_REQUEST,
                    org_id=org_id,
                    product_id=product_id,
                )

            step = "record_snapshot"
            completed_at = self.requests.record_snapshot(
                request_id,
                admin_stock_before=source.previous,
                admin_stock_after=source.new,
                client_stock_before=destination.previous,
                client_stock_after=destination.new,
                client_record_created=destination.is_new,
                points_credited=points,
            )
            snapshot = ApprovalSnapshot(
                request_id=request_id,
                product_id=product_id,
                client_id=client_id,
                quantity=quantity,
                admin_stock_before=source.previous,
                admin_stock_after=source.new,
                client_stock_before=destination.previous,
                client_stock_after=destination.new,
                client_record_created=destination.is_new,
                points_credited=points,
                bonus_deal_id=quote.deal_id,
                completed_at=to_utc_z(completed_at),
            )

            step = "commit"
            self.session.commit()
            return snapshot

        try:
            snapshot = run_with_retry(_apply, session=self.session)
        except InsufficientStockError as exc:
            self.session.rollback()
            self._compensate(request_id, exc)
            raise
        except Exception as exc:
            self.session.rollback()
            self._flag_incomplete(request_id, step, exc)
            raise ReconciliationIncompleteError(request_id, step, exc) from exc

        self._emit(approved_event(client_id, request_id, snapshot.to_dict()))
        return DecisionResult(
            outcome=OUTCOME_APPROVED,
            request_id=request_id,
            status=STATUS_APPROVED,
            snapshot=snapshot,
        )

    # ------------------------------------------------------------------
    # reject
    # ------------------------------------------------------------------

    def reject(self, request_id: int, approver_id: int, reason: str) -> DecisionResult:
        purchase_request = self.requests.get(request_id)
        client_id = purchase_request.client_id
        reason = require_reason(reason)

        conflict = self._claim(request_id, STATUS_REJECTED, approver_id, rejection_reason=reason)
        if conflict is not None:
            return conflict

        self._emit(rejected_event(client_id, request_id, reason))
        return DecisionResult(
            outcome=OUTCOME_REJECTED,
            request_id=request_id,
            status=STATUS_REJECTED,
            rejection_reason=reason,
        )

    # ------------------------------------------------------------------
    # manual reconciliation
    # ------------------------------------------------------------------

    def list_incomplete(self, org_id: int | None = None):
        return self.requests.list_incomplete(org_id)

    def release_claim(self, request_id: int, operator_id: int) -> bool:
        """
        Put a stuck approval (APPROVED, no snapshot) back to PENDING so it can
        be approved again. Refused once any ledger entry exists for it.
        """
        self.requests.get(request_id)
        if self.requests.has_ledger_entries(request_id):
            raise ConflictError(
                f"Purchase request {request_id} already has ledger entries; reconcile manually"
            )

        def _op() -> bool:
            released = self.requests.revert_claim(request_id)
            self.session.commit()
            return released

        released = run_with_retry(_op, session=self.session)
        if released:
            current_app.logger.warning(
                "Purchase request %s released back to PENDING by operator %s", request_id, operator_id
            )
        return released

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _claim(self, request_id: int, new_status: str, actor_id: int, *, rejection_reason: str | None = None):
        """Claim and commit. Returns an ALREADY_PROCESSED result on conflict, else None."""

        def _op() -> None:
            self.requests.claim(
                request_id,
                new_status,
                actor_user_id=actor_id,
                expected_status=STATUS_PENDING,
                rejection_reason=rejection_reason,
            )
            self.session.commit()

        try:
            run_with_retry(_op, session=self.session)
        except ClaimConflictError as exc:
            self.session.rollback()
            current_app.logger.info(
                "Purchase request %s already %s; %s by user %s is a no-op",
                request_id, exc.current_status, new_status.lower(), actor_id,
            )
            return DecisionResult(
                outcome=OUTCOME_ALREADY_PROCESSED,
                request_id=request_id,
                status=exc.current_status,
            )
        return None

    def _compensate(self, request_id: int, cause: InsufficientStockError) -> None:
        current_app.logger.warning(
            "Purchase request %s: %s; reverting approval claim", request_id, cause
        )

        def _op() -> bool:
            reverted = self.requests.revert_claim(request_id)
            self.session.commit()
            return reverted

        try:
            reverted = run_with_retry(_op, session=self.session)
        except Exception as exc:
            self.session.rollback()
            current_app.logger.exception(
                "Purchase request %s: could not revert approval claim after insufficient stock", request_id
            )
            self._flag_incomplete(request_id, "compensate", exc)
            raise ReconciliationIncompleteError(request_id, "compensate", exc) from exc
        if not reverted:
            current_app.logger.error(
                "Purchase request %s: approval claim was not open when reverting", request_id
            )

    def _flag_incomplete(self, request_id: int, step: str, cause: Exception) -> None:
        current_app.logger.error(
            "Purchase request %s approval incomplete at step '%s': %s. Manual reconciliation required.",
            request_id, step, cause,
        )
        try:
            self.requests.mark_incomplete(request_id, f"{step}: {cause}")
            self.session.commit()
        except Exception:
            self.session.rollback()
            current_app.logger.exception("Purchase request %s: could not record reconciliation error", request_id)

    def _emit(self, event) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.emit(event)
        except Exception:
            current_app.logger.exception(
                "Failed to emit %s for purchase request %s", event.type, event.request_id
            )


def default_orchestrator(notifier: NotificationEmitter | None = None) -> ReconciliationOrchestrator:
    """Orchestrator wired to the app's session and configuration."""
    config = current_app.config
    session = db.session
    return ReconciliationOrchestrator(
        session,
        ledger=LedgerStore(session, max_history_limit=config.get("LEDGER_HISTORY_MAX_LIMIT", 500)),
        notifier=notifier if notifier is not None else build_emitter(session),
        approval_reason=config.get("LOYALTY_REASON_APPROVED", "purchase_request_approved"),
    )


def approve_purchase_request(request_id: int, approver_id: int) -> DecisionResult:
    return default_orchestrator().approve(request_id, approver_id)


def reject_purchase_request(request_id: int, approver_id: int, reason: str) -> DecisionResult:
    return default_orchestrator().reject(request_id, approver_id, reason)
