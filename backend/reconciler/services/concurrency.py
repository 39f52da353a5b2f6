# Overview: Retry helpers for lock contention around short database operations.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError


def run_with_retry(func, *, session, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (lock timeouts, deadlocks) and StaleDataError.
    The session is rolled back between attempts, so func must be safe to
    re-run from the start of its transaction.

    Business conflicts (a lost compare-and-swap) are NOT retried here; they
    surface as domain errors from func itself.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
