from __future__ import annotations

from ..extensions import db
from reconciler.time_utils import to_utc_z


class Product(db.Model):
    """
    Admin-owned master product (the allocation source).

    INVARIANT: stock never goes negative. Stock is only written through
    stock_service.decrement_source (conditional UPDATE), never by assigning
    product.stock on a loaded instance.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("org_id", "sku", name="uq_products_org_sku"),
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("loyalty_points_per_unit >= 0", name="ck_products_points_non_negative"),
        db.Index("ix_products_org_active", "org_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    loyalty_points_per_unit = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    organization = db.relationship("Organization", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "stock": self.stock,
            "loyalty_points_per_unit": self.loyalty_points_per_unit,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductDeal(db.Model):
    """
    Quantity-tier bonus: buying at least min_quantity units in one request
    earns bonus_points on top of the per-unit points. The bonus is a flat add.

    Validity window is inclusive on both ends; NULL means open-ended.
    """
    __tablename__ = "product_deals"
    __table_args__ = (
        db.CheckConstraint("min_quantity >= 1", name="ck_product_deals_min_quantity"),
        db.CheckConstraint("bonus_points >= 0", name="ck_product_deals_bonus_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    min_quantity = db.Column(db.Integer, nullable=False)
    bonus_points = db.Column(db.Integer, nullable=False, default=0)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("deals", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "min_quantity": self.min_quantity,
            "bonus_points": self.bonus_points,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "is_active": self.is_active,
        }
