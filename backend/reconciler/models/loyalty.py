from __future__ import annotations

from ..extensions import db
from reconciler.time_utils import to_utc_z


class LoyaltyAccount(db.Model):
    """
    Points account for a client. One account per client.

    INVARIANT: points_balance == lifetime_points_earned - lifetime_points_redeemed.
    Counters are only moved by conditional UPDATEs in loyalty_service.
    """
    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        db.UniqueConstraint("client_id", name="uq_loyalty_accounts_client"),
        db.CheckConstraint("points_balance >= 0", name="ck_loyalty_accounts_balance_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)

    points_balance = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points_earned = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points_redeemed = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    client = db.relationship("User", backref=db.backref("loyalty_account", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "org_id": self.org_id,
            "points_balance": self.points_balance,
            "lifetime_points_earned": self.lifetime_points_earned,
            "lifetime_points_redeemed": self.lifetime_points_redeemed,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of point movements.

    TRANSACTION TYPES:
    - EARN: points credited (e.g. approved purchase request)
    - REDEEM: points spent

    IDEMPOTENCY: (account_id, transaction_type, reference_type, reference_id)
    is unique, so a given purchase request can only ever credit an account
    once, and a redemption reference can only be spent once.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.UniqueConstraint(
            "account_id", "transaction_type", "reference_type", "reference_id",
            name="uq_loyalty_transactions_reference",
        ),
        db.Index("ix_loyalty_txns_account_occurred", "account_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("loyalty_accounts.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)  # EARN, REDEEM
    points = db.Column(db.Integer, nullable=False)  # Positive for earn, negative for redeem
    balance_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=False)
    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.String(64), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    account = db.relationship("LoyaltyAccount", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "transaction_type": self.transaction_type,
            "points": self.points,
            "balance_after": self.balance_after,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "product_id": self.product_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
