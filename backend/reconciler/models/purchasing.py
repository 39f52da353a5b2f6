from __future__ import annotations

from ..extensions import db
from reconciler.time_utils import to_utc_z


class PurchaseRequest(db.Model):
    """
    A client's ask to allocate N units of an admin product.

    LIFECYCLE: PENDING -> APPROVED | REJECTED (terminal). Status is only
    written by request_state_service through conditional UPDATEs, each of
    which bumps version_id.

    COMPLETION: APPROVED alone is not completion. The result snapshot
    columns are written last, so completed_at IS NOT NULL is the signal
    that stock, client inventory, ledger and points were all applied.
    """
    __tablename__ = "purchase_requests"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_purchase_requests_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_purchase_requests_price_non_negative"),
        db.Index("ix_purchase_requests_org_status", "org_id", "status"),
        db.Index("ix_purchase_requests_client_created", "client_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    decided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)

    # Result snapshot (written once, after every approval effect is in place)
    admin_stock_before = db.Column(db.Integer, nullable=True)
    admin_stock_after = db.Column(db.Integer, nullable=True)
    client_stock_before = db.Column(db.Integer, nullable=True)
    client_stock_after = db.Column(db.Integer, nullable=True)
    client_record_created = db.Column(db.Boolean, nullable=True)
    points_credited = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Set when an approval was claimed but could not finish (manual reconciliation)
    reconciliation_error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("purchase_requests", lazy=True))
    client = db.relationship("User", foreign_keys=[client_id])
    decided_by = db.relationship("User", foreign_keys=[decided_by_user_id])

    @property
    def total_price_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def is_complete(self) -> bool:
        return self.status == "APPROVED" and self.completed_at is not None

    def snapshot_dict(self) -> dict | None:
        if self.completed_at is None:
            return None
        return {
            "admin_stock_before": self.admin_stock_before,
            "admin_stock_after": self.admin_stock_after,
            "client_stock_before": self.client_stock_before,
            "client_stock_after": self.client_stock_after,
            "client_record_created": self.client_record_created,
            "points_credited": self.points_credited,
            "completed_at": to_utc_z(self.completed_at),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "product_id": self.product_id,
            "client_id": self.client_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.total_price_cents,
            "notes": self.notes,
            "status": self.status,
            "version_id": self.version_id,
            "decided_by_user_id": self.decided_by_user_id,
            "decided_at": to_utc_z(self.decided_at),
            "rejection_reason": self.rejection_reason,
            "snapshot": self.snapshot_dict(),
            "reconciliation_error": self.reconciliation_error,
            "created_at": to_utc_z(self.created_at),
        }
