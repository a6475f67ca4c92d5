# Overview: Row locking and retry-on-conflict helpers shared by the stock and sale engines.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import StockConflictError
from ..extensions import db

RETRYABLE_ERRORS = (OperationalError, StaleDataError, StockConflictError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.05):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError (version
    conflicts) and StockConflictError (a conditional stock/status UPDATE that
    matched no row). Every attempt starts from a rolled-back session, so
    ``func`` must re-read whatever it compares against.
    """
    if attempts is None:
        attempts = current_app.config.get("STOCK_UPDATE_RETRY_ATTEMPTS", 3)
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.error(
                    "Giving up after %d attempts: %s", attempts, exc
                )
                raise
            current_app.logger.warning(
                "Concurrent write detected (attempt %d/%d), retrying: %s",
                attempt + 1, attempts, exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
