# backend/reconciler/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///reconciler.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # SQLite serializes writers; concurrent approvals wait on the lock instead of failing fast
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {"timeout": float(os.environ.get("DB_BUSY_TIMEOUT_SECONDS", "15"))},
    }

    # "outbox" persists events for a delivery worker, "log" only writes them to the app log
    NOTIFICATION_BACKEND = os.environ.get("NOTIFICATION_BACKEND", "outbox")

    LOYALTY_REASON_APPROVED = os.environ.get("LOYALTY_REASON_APPROVED", "purchase_request_approved")
    LEDGER_HISTORY_MAX_LIMIT = int(os.environ.get("LEDGER_HISTORY_MAX_LIMIT", "500"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
