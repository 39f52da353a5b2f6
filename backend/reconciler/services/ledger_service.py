# Overview: Inventory ledger store; append-only audit of stock movements per purchase request.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError

from ..models import InventoryLedgerEntry
from ..time_utils import utcnow
from ..validation import ConflictError, ValidationError

"""
Inventory Ledger Invariants (authoritative)

- Append-only: no update/delete paths exist, and ORM listeners refuse them.
- append() writes a batch inside one SAVEPOINT: readers see all of a
  request's entries or none of them.
- An approved request has exactly one DEDUCTION and one ALLOCATION entry;
  a rejected request has none. The unique (purchase_request_id, entry_kind)
  constraint turns a duplicate append into LedgerAppendError.
- History reads are newest first (occurred_at DESC, id DESC) and capped.
  Client history lists ALLOCATION entries only; DEDUCTION entries carry the
  client id for attribution but belong to the product history.
"""

ENTRY_DEDUCTION = "DEDUCTION"
ENTRY_ALLOCATION = "ALLOCATION"
VALID_ENTRY_KINDS = {ENTRY_DEDUCTION, ENTRY_ALLOCATION}

DEFAULT_HISTORY_LIMIT = 100


class LedgerAppendError(ConflictError):
    """The batch conflicts with entries already recorded for the request."""


@dataclass(frozen=True)
class LedgerEntryDraft:
    """An entry not yet written. Built by the orchestrator, persisted by append()."""
    org_id: int
    purchase_request_id: int
    entry_kind: str
    product_id: int
    client_id: int
    quantity: int
    previous_quantity: int
    new_quantity: int
    actor_user_id: int
    note: Optional[str] = None

    def validate(self) -> None:
        if self.entry_kind not in VALID_ENTRY_KINDS:
            raise ValidationError(f"Invalid entry_kind '{self.entry_kind}'")
        if self.quantity <= 0:
            raise ValidationError("ledger quantity must be > 0")
        if self.previous_quantity < 0 or self.new_quantity < 0:
            raise ValidationError("ledger quantities cannot be negative")
        delta = self.new_quantity - self.previous_quantity
        expected = -self.quantity if self.entry_kind == ENTRY_DEDUCTION else self.quantity
        if delta != expected:
            raise ValidationError(
                f"{self.entry_kind} entry moves {delta} units but records quantity {self.quantity}"
            )


def movement_entries(
    *,
    org_id: int,
    purchase_request_id: int,
    product_id: int,
    client_id: int,
    quantity: int,
    actor_user_id: int,
    admin_before: int,
    admin_after: int,
    client_before: int,
    client_after: int,
) -> list[LedgerEntryDraft]:
    """The deduction/allocation pair recording one approved allocation."""
    common = dict(
        org_id=org_id,
        purchase_request_id=purchase_request_id,
        product_id=product_id,
        client_id=client_id,
        quantity=quantity,
        actor_user_id=actor_user_id,
    )
    return [
        LedgerEntryDraft(
            entry_kind=ENTRY_DEDUCTION,
            previous_quantity=admin_before,
            new_quantity=admin_after,
            note=f"Deducted for purchase request {purchase_request_id}",
            **common,
        ),
        LedgerEntryDraft(
            entry_kind=ENTRY_ALLOCATION,
            previous_quantity=client_before,
            new_quantity=client_after,
            note=f"Allocated to client {client_id} for purchase request {purchase_request_id}",
            **common,
        ),
    ]


class LedgerStore:
    def __init__(self, session, *, max_history_limit: int = 500):
        self.session = session
        self.max_history_limit = max_history_limit

    def append(self, drafts: Iterable[LedgerEntryDraft], *, occurred_at: datetime | None = None) -> list[InventoryLedgerEntry]:
        """
        Write a batch of entries all-or-nothing. Does not commit.

        Every entry of one batch shares the same occurred_at.
        """
        drafts = list(drafts)
        if not drafts:
            raise ValidationError("ledger batch is empty")
        for draft in drafts:
            draft.validate()

        when = occurred_at or utcnow()
        rows = [
            InventoryLedgerEntry(
                org_id=d.org_id,
                purchase_request_id=d.purchase_request_id,
                entry_kind=d.entry_kind,
                product_id=d.product_id,
                client_id=d.client_id,
                quantity=d.quantity,
                previous_quantity=d.previous_quantity,
                new_quantity=d.new_quantity,
                actor_user_id=d.actor_user_id,
                occurred_at=when,
                note=d.note,
            )
            for d in drafts
        ]
        try:
            with self.session.begin_nested():
                self.session.add_all(rows)
        except IntegrityError as exc:
            request_ids = sorted({d.purchase_request_id for d in drafts})
            raise LedgerAppendError(
                f"Ledger entries already recorded for purchase request(s) {request_ids}"
            ) from exc
        return rows

    def entries_for_request(self, purchase_request_id: int) -> list[InventoryLedgerEntry]:
        return (
            self.session.query(InventoryLedgerEntry)
            .filter(InventoryLedgerEntry.purchase_request_id == purchase_request_id)
            .order_by(InventoryLedgerEntry.id.asc())
            .all()
        )

    def _clamp(self, limit: int | None) -> int:
        if limit is None:
            return DEFAULT_HISTORY_LIMIT
        return max(1, min(int(limit), self.max_history_limit))

    def history_for_product(self, product_id: int, limit: int | None = None) -> list[InventoryLedgerEntry]:
        return (
            self.session.query(InventoryLedgerEntry)
            .filter(InventoryLedgerEntry.product_id == product_id)
            .order_by(InventoryLedgerEntry.occurred_at.desc(), InventoryLedgerEntry.id.desc())
            .limit(self._clamp(limit))
            .all()
        )

    def history_for_client(self, client_id: int, limit: int | None = None) -> list[InventoryLedgerEntry]:
        """Allocations only: a client's inventory moves through ALLOCATION entries."""
        return (
            self.session.query(InventoryLedgerEntry)
            .filter(
                InventoryLedgerEntry.client_id == client_id,
                InventoryLedgerEntry.entry_kind == ENTRY_ALLOCATION,
            )
            .order_by(InventoryLedgerEntry.occurred_at.desc(), InventoryLedgerEntry.id.desc())
            .limit(self._clamp(limit))
            .all()
        )

    def history_for(self, *, product_id: int | None = None, client_id: int | None = None, limit: int | None = None):
        """Read-only audit view keyed by exactly one of product_id / client_id."""
        if (product_id is None) == (client_id is None):
            raise ValidationError("Provide exactly one of product_id or client_id")
        if product_id is not None:
            return self.history_for_product(product_id, limit)
        return self.history_for_client(client_id, limit)
