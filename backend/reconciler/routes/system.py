# backend/reconciler/routes/system.py
"""
System health endpoint.

Reports database connectivity plus two reconciliation signals operators
act on: approvals stuck without a snapshot, and the notification outbox
backlog.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import NotificationEvent
from ..services.request_state_service import RequestStateMachine
from reconciler.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_reconciliation_health() -> dict:
    """
    Degraded while any approval is claimed but incomplete (needs an operator).
    """
    start_time = time.time()
    try:
        incomplete = RequestStateMachine(db.session).list_incomplete()
        pending_notifications = (
            db.session.query(NotificationEvent)
            .filter(NotificationEvent.status == "PENDING")
            .count()
        )
        elapsed_ms = (time.time() - start_time) * 1000

        details = {
            "incomplete_approvals": len(incomplete),
            "pending_notifications": pending_notifications,
        }
        if incomplete:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": "Approvals awaiting manual reconciliation: "
                           + ", ".join(str(r.id) for r in incomplete[:20]),
                "details": details,
            }
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Reconciliation health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Reconciliation check error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database or reconciliation check failed
    """
    start_time = time.time()

    database_health = check_database_health()
    reconciliation_health = check_reconciliation_health()

    all_checks = [database_health, reconciliation_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "reconciliation": reconciliation_health,
        }
    }

    return response, http_status
