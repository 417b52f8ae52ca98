# Overview: Row locking and bounded retry for optimistic-concurrency conflicts.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflictError
from ..extensions import db


logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Lock the original transaction or balance rows being posted against.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id columns catch
    the conflict there instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05, label: str = "operation"):
    """
    Run a posting step again when a concurrent writer got there first.

    StaleDataError (a version_id mismatch) and OperationalError (database
    locked, deadlock) are retried with exponential backoff.
    `func` must be safe to run again from the start: the session is rolled
    back before every retry. When the attempts are used up the last failure
    surfaces as ConcurrencyConflictError.
    """
    attempts = max(1, int(attempts))
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyConflictError(
                    f"{label} conflicted with a concurrent update; retry the request",
                    attempts=attempts,
                ) from exc
            delay = backoff_base * (2 ** attempt)
            logger.warning(
                "%s conflict (%s), retrying in %.3fs (attempt %d/%d)",
                label, type(exc).__name__, delay, attempt + 1, attempts,
            )
            time.sleep(delay)
