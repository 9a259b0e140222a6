# Overview: Service-layer operations for concurrency; encapsulates locking, optimistic version bumps and retry.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; bump_version() is what
    serializes writers there.
    """
    return query.with_for_update()


def bump_version(model, row_id: int, expected_version: int) -> int:
    """
    Compare-and-set the row's version_id.

    Raises StaleDataError when another transaction bumped it first, which
    run_with_retry() turns into a fresh attempt. Returns the new version.
    """
    result = db.session.execute(
        update(model)
        .where(model.id == row_id, model.version_id == expected_version)
        .values(version_id=model.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleDataError(
            f"{model.__tablename__} row {row_id} changed concurrently (expected version {expected_version})"
        )
    return expected_version + 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates unchanged; business conflicts are never retried.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
