from __future__ import annotations

from ..extensions import db
from reconciler.time_utils import to_utc_z


ROLE_SUPER_ADMIN = "super_admin"
ROLE_ADMIN = "admin"
ROLE_CLIENT = "client"
ROLE_DEALER = "dealer"

VALID_ROLES = {ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_CLIENT, ROLE_DEALER}
APPROVER_ROLES = (ROLE_SUPER_ADMIN, ROLE_ADMIN)


class User(db.Model):
    """
    Participants of the tiered programme (super-admin -> admin -> client -> dealer).

    Credentials live with the upstream identity provider; this table only
    exists for attribution (approver, client) and role checks.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("org_id", "username", name="uq_users_org_username"),
        db.Index("ix_users_org_role", "org_id", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Nullable for super admins, who operate across organizations
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)

    username = db.Column(db.String(64), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(16), nullable=False, index=True)

    # Dealers hang off a client
    parent_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("users", lazy=True))

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "parent_user_id": self.parent_user_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
