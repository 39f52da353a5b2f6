"""
ORM-level append-only enforcement for audit records.

InventoryLedgerEntry and LoyaltyTransaction rows are facts: once flushed
they may never be updated or deleted through the ORM. Corrections are new
rows. Raw SQL is not covered here; the service layer simply exposes no
update/delete paths for these tables.
"""

from __future__ import annotations

from sqlalchemy import event

from .models import InventoryLedgerEntry, LoyaltyTransaction


class ImmutabilityViolationError(RuntimeError):
    """Raised when code tries to modify or delete an append-only record."""

    def __init__(self, entity: str, entity_id, action: str):
        self.entity = entity
        self.entity_id = entity_id
        self.action = action
        super().__init__(f"{entity} {entity_id} is append-only; {action} is not allowed")


def _refuse_update(mapper, connection, target):
    raise ImmutabilityViolationError(type(target).__name__, target.id, "update")


def _refuse_delete(mapper, connection, target):
    raise ImmutabilityViolationError(type(target).__name__, target.id, "delete")


_PROTECTED = (InventoryLedgerEntry, LoyaltyTransaction)
_registered = False


def register_immutability_listeners() -> None:
    """Install listeners once per process (create_app may run many times in tests)."""
    global _registered
    if _registered:
        return
    for model in _PROTECTED:
        event.listen(model, "before_update", _refuse_update)
        event.listen(model, "before_delete", _refuse_delete)
    _registered = True
