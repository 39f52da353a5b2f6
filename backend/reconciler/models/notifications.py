from __future__ import annotations

import json

from ..extensions import db
from reconciler.time_utils import to_utc_z


class NotificationEvent(db.Model):
    """
    Outbox row for a structured notification event.

    Delivery (app, email, WhatsApp) is owned by a separate worker that picks
    up PENDING rows; this service only records what should be said.
    """
    __tablename__ = "notification_events"
    __table_args__ = (
        db.Index("ix_notification_events_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    recipient_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    purchase_request_id = db.Column(db.Integer, db.ForeignKey("purchase_requests.id"), nullable=True, index=True)

    payload = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="PENDING")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "recipient_user_id": self.recipient_user_id,
            "purchase_request_id": self.purchase_request_id,
            "payload": json.loads(self.payload) if self.payload else None,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }
