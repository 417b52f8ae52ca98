# Overview: Transaction context shared by every mutating posting operation.

"""
Unit Of Work

One UnitOfWork wraps one database transaction. Every method that changes
stock, ledger or transaction rows takes it as its first argument and calls
`uow.require_active()` before touching the session.

STATE MACHINE (forward only; a state may be skipped, never revisited):

    validating -> computing -> persisting -> adjusting_stock -> posting_ledger -> committed
         \\____________\\____________\\______________\\_______________\\-------> failed

`failed` is reachable from any state before `committed`. Leaving the `with`
block without calling commit() rolls everything back, so an exception at any
point leaves no partial rows.

Cache keys collected with invalidate() are handed to the sink only after the
commit succeeded.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

from ..errors import BackofficeError, PersistenceError, PostingCancelledError
from ..extensions import db
from .cache_service import CacheInvalidationSink, LoggingCacheSink
from .concurrency import run_with_retry


logger = logging.getLogger(__name__)


class PostingState(str, Enum):
    VALIDATING = "validating"
    COMPUTING = "computing"
    PERSISTING = "persisting"
    ADJUSTING_STOCK = "adjusting_stock"
    POSTING_LEDGER = "posting_ledger"
    COMMITTED = "committed"
    FAILED = "failed"


_ORDER = [
    PostingState.VALIDATING,
    PostingState.COMPUTING,
    PostingState.PERSISTING,
    PostingState.ADJUSTING_STOCK,
    PostingState.POSTING_LEDGER,
    PostingState.COMMITTED,
]


class UnitOfWork:

    def __init__(
        self,
        *,
        session=None,
        cache_sink: CacheInvalidationSink | None = None,
        cancel_event: threading.Event | None = None,
        label: str = "posting",
    ):
        self.session = session if session is not None else db.session
        self.cache_sink = cache_sink or LoggingCacheSink()
        self.cancel_event = cancel_event
        self.label = label
        self.state = PostingState.VALIDATING
        self.history: list[PostingState] = [PostingState.VALIDATING]
        self._stale_keys: set[str] = set()

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.state is not PostingState.COMMITTED and self.state is not PostingState.FAILED:
            self.fail(reason=exc_type.__name__ if exc_type else "not committed")
        return False

    @property
    def is_active(self) -> bool:
        return self.state not in (PostingState.COMMITTED, PostingState.FAILED)

    @property
    def stale_keys(self) -> frozenset[str]:
        return frozenset(self._stale_keys)

    def require_active(self) -> None:
        if not self.is_active:
            raise PersistenceError(
                f"Unit of work for {self.label} is {self.state.value}; start a new one",
                state=self.state.value,
            )

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PostingCancelledError(
                f"{self.label} cancelled during {self.state.value}",
                state=self.state.value,
            )

    def advance(self, state: PostingState) -> None:
        """Move forward to `state`. Cancellation is honoured at every step."""
        self.require_active()
        if state in (PostingState.COMMITTED, PostingState.FAILED):
            raise PersistenceError(f"use commit()/fail() to reach {state.value}")
        if _ORDER.index(state) <= _ORDER.index(self.state):
            raise PersistenceError(
                f"illegal transition {self.state.value} -> {state.value}",
                state=self.state.value,
                target=state.value,
            )
        self.check_cancelled()
        logger.debug("%s: %s -> %s", self.label, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def invalidate(self, *keys: str | Iterable[str]) -> None:
        for key in keys:
            if isinstance(key, str):
                self._stale_keys.add(key)
            else:
                self._stale_keys.update(key)

    def commit(self) -> None:
        self.require_active()
        self.check_cancelled()
        self.session.commit()
        self.state = PostingState.COMMITTED
        self.history.append(PostingState.COMMITTED)
        logger.info("%s committed", self.label)
        if self._stale_keys:
            self._emit_invalidations()

    def fail(self, reason: str = "") -> None:
        if self.state is PostingState.COMMITTED:
            return
        self.session.rollback()
        logger.debug("%s: %s -> failed (%s)", self.label, self.state.value, reason)
        self.state = PostingState.FAILED
        self.history.append(PostingState.FAILED)

    def _emit_invalidations(self) -> None:
        try:
            self.cache_sink.invalidate(sorted(self._stale_keys))
        except Exception:
            # posting is committed at this point; the result stands
            logger.exception("%s: cache invalidation failed for %d keys", self.label, len(self._stale_keys))


def run_in_unit_of_work(
    func: Callable[[UnitOfWork], object],
    *,
    label: str,
    cache_sink: CacheInvalidationSink | None = None,
    cancel_event: threading.Event | None = None,
    attempts: int = 3,
    backoff_base: float = 0.05,
):
    """
    Run `func(uow)` in a fresh UnitOfWork, retrying the whole function on
    optimistic-lock conflicts. `func` is expected to call uow.commit().

    Unexpected database errors are rolled back and surfaced as PersistenceError;
    BackofficeError subclasses propagate unchanged.
    """
    def _attempt():
        with UnitOfWork(cache_sink=cache_sink, cancel_event=cancel_event, label=label) as uow:
            return func(uow)

    try:
        return run_with_retry(_attempt, attempts=attempts, backoff_base=backoff_base, label=label)
    except BackofficeError:
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("%s failed with a database error: %s", label, exc)
        raise PersistenceError(f"{label} failed to persist", cause=type(exc).__name__) from exc
