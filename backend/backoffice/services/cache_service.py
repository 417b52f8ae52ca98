# Overview: Cache invalidation contract emitted after a posting commits.

"""
Cache Invalidation

The read-through cache lives outside this package. The posting engine only
promises to name every key whose cached value became stale, once, after the
database commit succeeded. A rolled back unit of work emits nothing.

Key shapes:
    transaction:{id}        one transaction document
    transactions:list       any transaction listing
    ledger:{account_code}   account statement / balance
    stock:{item_id}         on-hand figures for an item
    returnable:{id}         returnable quantities of an original transaction
"""

from __future__ import annotations

import logging
from typing import Iterable


logger = logging.getLogger(__name__)


TRANSACTIONS_LIST_KEY = "transactions:list"


def transaction_key(transaction_id) -> str:
    return f"transaction:{transaction_id}"


def ledger_key(account_code) -> str:
    return f"ledger:{account_code}"


def stock_key(item_id) -> str:
    return f"stock:{item_id}"


def returnable_key(original_transaction_id) -> str:
    return f"returnable:{original_transaction_id}"


class CacheInvalidationSink:
    """Receives the stale keys of one committed unit of work."""

    def invalidate(self, keys: Iterable[str]) -> None:
        raise NotImplementedError


class LoggingCacheSink(CacheInvalidationSink):
    """Default sink when no cache is wired: records the keys in the log."""

    def invalidate(self, keys: Iterable[str]) -> None:
        keys = sorted(keys)
        if keys:
            logger.info("cache invalidate: %s", ", ".join(keys))


class RecordingCacheSink(CacheInvalidationSink):
    """Keeps every emitted batch in memory (tests, diagnostics)."""

    def __init__(self):
        self.batches: list[list[str]] = []

    def invalidate(self, keys: Iterable[str]) -> None:
        self.batches.append(sorted(keys))

    @property
    def keys(self) -> set[str]:
        return {key for batch in self.batches for key in batch}

    def clear(self) -> None:
        self.batches.clear()
