# Overview: Purchase request lifecycle; the single concurrency guard for approvals and rejections.

"""
Purchase Request State Machine

STATE MACHINE:
    PENDING -> APPROVED
    PENDING -> REJECTED

    PENDING:  Submitted by a client, awaiting an admin decision
    APPROVED: Claimed for approval; complete once the result snapshot is written
    REJECTED: Terminal, carries a rejection reason

RULES:
1. APPROVED and REJECTED are terminal. Nothing transitions out of them,
   except the compensating revert of an approval claim that never moved stock.
2. Every transition is ONE conditional UPDATE filtered on the expected
   status (compare-and-swap). Never read-then-write.
3. Of N concurrent claims on one request, exactly one matches the filter;
   the others see rowcount == 0 and get ClaimConflictError.
4. These methods flush but do not commit. The caller owns the transaction
   boundary.
"""

from __future__ import annotations

from typing import Literal

from sqlalchemy import update

from ..models import PurchaseRequest, InventoryLedgerEntry
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError, require_reason


STATUS_PENDING = "PENDING"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"

VALID_STATUSES = {STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED}
TERMINAL_STATUSES = {STATUS_APPROVED, STATUS_REJECTED}
RequestStatus = Literal["PENDING", "APPROVED", "REJECTED"]

_VALID_TRANSITIONS = {
    (STATUS_PENDING, STATUS_APPROVED),
    (STATUS_PENDING, STATUS_REJECTED),
}


class RequestNotFoundError(NotFoundError):
    def __init__(self, request_id: int):
        self.request_id = request_id
        super().__init__(f"Purchase request {request_id} not found")


class InvalidTransitionError(ValidationError):
    """Raised when a caller asks for a transition the lifecycle forbids."""


class ClaimConflictError(ConflictError):
    """Another actor already moved the request out of the expected status."""

    def __init__(self, request_id: int, expected_status: str, current_status: str):
        self.request_id = request_id
        self.expected_status = expected_status
        self.current_status = current_status
        super().__init__(
            f"Purchase request {request_id} is {current_status}, expected {expected_status}"
        )


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise InvalidTransitionError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    validate_status(from_status)
    validate_status(to_status)
    return (from_status, to_status) in _VALID_TRANSITIONS


class RequestStateMachine:
    """Owns every write to PurchaseRequest.status and the result snapshot."""

    def __init__(self, session):
        self.session = session

    def get(self, request_id: int) -> PurchaseRequest:
        purchase_request = self.session.get(PurchaseRequest, request_id)
        if purchase_request is None:
            raise RequestNotFoundError(request_id)
        return purchase_request

    def current_status(self, request_id: int) -> str:
        status = (
            self.session.query(PurchaseRequest.status)
            .filter(PurchaseRequest.id == request_id)
            .scalar()
        )
        if status is None:
            raise RequestNotFoundError(request_id)
        return status

    def claim(
        self,
        request_id: int,
        new_status: str,
        *,
        actor_user_id: int,
        expected_status: str = STATUS_PENDING,
        rejection_reason: str | None = None,
    ) -> None:
        """
        Atomically move a request from expected_status to new_status.

        Rejections must carry a non-empty reason, written in the same UPDATE.

        Raises:
            InvalidTransitionError: transition not allowed by the lifecycle
            ValidationError: rejection without a reason
            RequestNotFoundError: no such request
            ClaimConflictError: request no longer in expected_status
        """
        if not can_transition(expected_status, new_status):
            raise InvalidTransitionError(f"Cannot transition {expected_status} -> {new_status}")

        values = {
            "status": new_status,
            "version_id": PurchaseRequest.version_id + 1,
            "decided_by_user_id": actor_user_id,
            "decided_at": utcnow(),
        }
        if new_status == STATUS_REJECTED:
            values["rejection_reason"] = require_reason(rejection_reason, field_name="rejection_reason")

        stmt = (
            update(PurchaseRequest)
            .where(
                PurchaseRequest.id == request_id,
                PurchaseRequest.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount == 1:
            self.session.flush()
            return

        # Lost the race (or never existed): report which.
        current = self.current_status(request_id)
        raise ClaimConflictError(request_id, expected_status, current)

    def revert_claim(self, request_id: int) -> bool:
        """
        Compensating action: put a claimed-but-unapplied approval back to PENDING.

        Only matches APPROVED rows without a snapshot, so a completed approval
        can never be reopened. Returns True if the row was reverted.
        """
        stmt = (
            update(PurchaseRequest)
            .where(
                PurchaseRequest.id == request_id,
                PurchaseRequest.status == STATUS_APPROVED,
                PurchaseRequest.completed_at.is_(None),
            )
            .values(
                status=STATUS_PENDING,
                version_id=PurchaseRequest.version_id + 1,
                decided_by_user_id=None,
                decided_at=None,
                reconciliation_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.flush()
        return result.rowcount == 1

    def record_snapshot(
        self,
        request_id: int,
        *,
        admin_stock_before: int,
        admin_stock_after: int,
        client_stock_before: int,
        client_stock_after: int,
        client_record_created: bool,
        points_credited: int,
    ):
        """
        Persist the approval result. Written last; its presence means done.

        Raises InvalidTransitionError if the request is not an open approval
        claim (already completed, reverted, or rejected).
        """
        completed_at = utcnow()
        stmt = (
            update(PurchaseRequest)
            .where(
                PurchaseRequest.id == request_id,
                PurchaseRequest.status == STATUS_APPROVED,
                PurchaseRequest.completed_at.is_(None),
            )
            .values(
                admin_stock_before=admin_stock_before,
                admin_stock_after=admin_stock_after,
                client_stock_before=client_stock_before,
                client_stock_after=client_stock_after,
                client_record_created=client_record_created,
                points_credited=points_credited,
                completed_at=completed_at,
                reconciliation_error=None,
                version_id=PurchaseRequest.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            raise InvalidTransitionError(
                f"Purchase request {request_id} is not an open approval; snapshot not written"
            )
        self.session.flush()
        return completed_at

    def mark_incomplete(self, request_id: int, error: str) -> None:
        """Flag a claimed approval whose effects could not be applied."""
        stmt = (
            update(PurchaseRequest)
            .where(
                PurchaseRequest.id == request_id,
                PurchaseRequest.status == STATUS_APPROVED,
                PurchaseRequest.completed_at.is_(None),
            )
            .values(reconciliation_error=error[:255])
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        self.session.flush()

    def list_incomplete(self, org_id: int | None = None) -> list[PurchaseRequest]:
        """APPROVED requests without a snapshot (claimed, never completed)."""
        q = self.session.query(PurchaseRequest).filter(
            PurchaseRequest.status == STATUS_APPROVED,
            PurchaseRequest.completed_at.is_(None),
        )
        if org_id is not None:
            q = q.filter(PurchaseRequest.org_id == org_id)
        return q.order_by(PurchaseRequest.decided_at.asc(), PurchaseRequest.id.asc()).all()

    def has_ledger_entries(self, request_id: int) -> bool:
        return (
            self.session.query(InventoryLedgerEntry.id)
            .filter(InventoryLedgerEntry.purchase_request_id == request_id)
            .first()
            is not None
        )
