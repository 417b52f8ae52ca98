"""
ORM-level guards for append-only tables.

StockMovement and LedgerEntry rows are audit history: once flushed they are
never updated or deleted. Corrections are new rows (compensating movements,
reversing ledger batches). These listeners fire before the SQL is emitted, so
a violating flush aborts and the unit of work rolls back.

Bulk query.delete()/update() bypass mapper events; test fixtures use those
to reset tables.
"""

from __future__ import annotations

from sqlalchemy import event

from ..errors import ImmutableRecordError
from .inventory import StockMovement
from .ledger import LedgerEntry


APPEND_ONLY_MODELS = (StockMovement, LedgerEntry)


def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} {target.id} is append-only and cannot be updated",
        entity=type(target).__name__,
        entity_id=target.id,
    )


def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} {target.id} is append-only and cannot be deleted",
        entity=type(target).__name__,
        entity_id=target.id,
    )


def register_immutability_listeners() -> None:
    for model in APPEND_ONLY_MODELS:
        if not event.contains(model, "before_update", _reject_update):
            event.listen(model, "before_update", _reject_update)
        if not event.contains(model, "before_delete", _reject_delete):
            event.listen(model, "before_delete", _reject_delete)
