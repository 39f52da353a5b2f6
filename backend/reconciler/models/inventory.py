from __future__ import annotations

from ..extensions import db
from reconciler.time_utils import to_utc_z


class ClientInventory(db.Model):
    """
    A client's private stock of one admin product.

    One row per (client_id, product_id); created on first allocation and
    incremented afterwards. This core never deletes rows.
    """
    __tablename__ = "client_inventory"
    __table_args__ = (
        db.UniqueConstraint("client_id", "product_id", name="uq_client_inventory_client_product"),
        db.CheckConstraint("quantity >= 0", name="ck_client_inventory_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    last_updated = db.Column(db.DateTime(timezone=True), nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "client_id": self.client_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "last_updated": to_utc_z(self.last_updated),
        }


class InventoryLedgerEntry(db.Model):
    """
    Immutable audit record of one inventory movement.

    ENTRY KINDS:
    - DEDUCTION: stock leaving the admin product
    - ALLOCATION: stock arriving in the client's inventory

    An approved request owns exactly one entry of each kind (enforced by
    uq_inventory_ledger_request_kind); a rejected request owns none.
    """
    __tablename__ = "inventory_ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("purchase_request_id", "entry_kind", name="uq_inventory_ledger_request_kind"),
        db.Index("ix_inventory_ledger_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_inventory_ledger_client_occurred", "client_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    purchase_request_id = db.Column(db.Integer, db.ForeignKey("purchase_requests.id"), nullable=False, index=True)

    entry_kind = db.Column(db.String(16), nullable=False)  # DEDUCTION, ALLOCATION
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    note = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "purchase_request_id": self.purchase_request_id,
            "entry_kind": self.entry_kind,
            "product_id": self.product_id,
            "client_id": self.client_id,
            "quantity": self.quantity,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
        }
