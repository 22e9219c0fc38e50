# Overview: Row locking and retry helpers shared by stock, ledger, order and queue writers.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Take row locks on the rows a query selects (SELECT ... FOR UPDATE).

    NOTE: SQLite ignores FOR UPDATE; there the single-writer database lock
    plus WarehouseStock.version_id give the same serialization.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run a unit of DB work, retrying on lock contention.

    Retries on OperationalError (database locked, deadlock) and StaleDataError
    (version_id conflict on a stock row). The session is rolled back before
    each retry, so func must redo all of its reads.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))


def run_atomic(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    run_with_retry for a unit of work that commits itself. Any other error
    rolls the session back before propagating.
    """
    def _guarded():
        try:
            return func()
        except (OperationalError, StaleDataError):
            raise
        except Exception:
            db.session.rollback()
            raise

    return run_with_retry(_guarded, attempts=attempts, backoff_base=backoff_base)
