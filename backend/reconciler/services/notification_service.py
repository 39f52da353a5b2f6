# Overview: Notification events and emitters (outbox or log); delivery is owned elsewhere.

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from typing import Any, Protocol

from flask import current_app

from ..models import NotificationEvent as NotificationEventRow


EVENT_REQUEST_APPROVED = "purchase_request_approved"
EVENT_REQUEST_REJECTED = "purchase_request_rejected"


@dataclass(frozen=True)
class NotificationEvent:
    type: str
    client_id: int
    request_id: int
    snapshot: dict | None = None
    reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        payload = asdict(self)
        return {k: v for k, v in payload.items() if v not in (None, {})}


def approved_event(client_id: int, request_id: int, snapshot: dict) -> NotificationEvent:
    return NotificationEvent(
        type=EVENT_REQUEST_APPROVED,
        client_id=client_id,
        request_id=request_id,
        snapshot=snapshot,
    )


def rejected_event(client_id: int, request_id: int, reason: str) -> NotificationEvent:
    return NotificationEvent(
        type=EVENT_REQUEST_REJECTED,
        client_id=client_id,
        request_id=request_id,
        reason=reason,
    )


class NotificationEmitter(Protocol):
    def emit(self, event: NotificationEvent) -> None: ...


class OutboxEmitter:
    """
    Persists each event as a PENDING outbox row in its own commit.

    Called only after the decision is committed, so a failure here can
    never undo the approval or rejection.
    """

    def __init__(self, session):
        self.session = session

    def emit(self, event: NotificationEvent) -> None:
        row = NotificationEventRow(
            event_type=event.type,
            recipient_user_id=event.client_id,
            purchase_request_id=event.request_id,
            payload=json.dumps(event.to_payload(), sort_keys=True, default=str),
            status="PENDING",
        )
        try:
            self.session.add(row)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


class LogEmitter:
    """Writes events to the application log only (local development)."""

    def emit(self, event: NotificationEvent) -> None:
        current_app.logger.info(
            "notification %s for client %s (request %s): %s",
            event.type, event.client_id, event.request_id,
            json.dumps(event.to_payload(), sort_keys=True, default=str),
        )


class RecordingEmitter:
    """Keeps events in memory; used by tests and dry runs."""

    def __init__(self):
        self.events: list[NotificationEvent] = []

    def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)


def build_emitter(session, backend: str | None = None) -> NotificationEmitter:
    backend = backend or current_app.config.get("NOTIFICATION_BACKEND", "outbox")
    if backend == "outbox":
        return OutboxEmitter(session)
    if backend == "log":
        return LogEmitter()
    raise ValueError(f"Unknown NOTIFICATION_BACKEND '{backend}'")


def pending_outbox(session, limit: int = 100) -> list[NotificationEventRow]:
    return (
        session.query(NotificationEventRow)
        .filter(NotificationEventRow.status == "PENDING")
        .order_by(NotificationEventRow.id.asc())
        .limit(limit)
        .all()
    )
