# Overview: Closed set of typed errors raised across the posting engine boundary.

"""
Posting Engine Error Taxonomy (authoritative)

Every error that crosses a service boundary is a BackofficeError subclass.
Callers match on the class (or on `code`), never on the message text.

    BackofficeError
    +-- ValidationError                 400  bad/missing input, rejected before mutation
    |   +-- InvalidQuantity
    |   +-- InvalidQuantityOrPrice
    |   +-- InvalidRate
    |   +-- UnknownTaxCode
    |   +-- ReturnValidationError       carries every per-item problem at once
    +-- NotFoundError                   404  original transaction / item / account absent
    |   +-- ItemNotInOriginalTransaction
    +-- OverReturnError                 409  requested > returnable (per item)
    +-- InsufficientStockError          409  strict stock path, no partial change
    +-- ImmutableRecordError            409  attempt to update/delete posted rows
    +-- ConcurrencyConflictError        409  optimistic retries exhausted (retryable)
    +-- PostingCancelledError           409  caller cancelled before commit
    +-- LedgerImbalanceError            500  internal invariant breach, never recoverable
    +-- PersistenceError                500  unexpected storage failure after rollback
"""

from __future__ import annotations

from typing import Any


class BackofficeError(Exception):
    """Base class for every error the posting engine raises to callers."""

    code = "BACKOFFICE_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# INPUT VALIDATION
# =============================================================================

class ValidationError(BackofficeError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, field: str | None = None, **details: Any):
        if field is not None:
            details["field"] = field
        super().__init__(message, **details)
        self.field = field


class InvalidQuantity(ValidationError):
    code = "INVALID_QUANTITY"


class InvalidQuantityOrPrice(ValidationError):
    code = "INVALID_QUANTITY_OR_PRICE"


class InvalidRate(ValidationError):
    code = "INVALID_RATE"


class UnknownTaxCode(ValidationError):
    code = "UNKNOWN_TAX_CODE"

    def __init__(self, tax_code: str, on_date=None):
        suffix = f" on {on_date.isoformat()}" if on_date is not None else ""
        super().__init__(
            f"Tax code {tax_code!r} not found or not in effect{suffix}",
            field="tax_codes",
            tax_code=tax_code,
        )
        self.tax_code = tax_code


# =============================================================================
# LOOKUPS
# =============================================================================

class NotFoundError(BackofficeError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any, message: str | None = None):
        super().__init__(message or f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class ItemNotInOriginalTransaction(NotFoundError):
    code = "ITEM_NOT_IN_ORIGINAL_TRANSACTION"

    def __init__(self, original_transaction_id: int, item_id: int):
        super().__init__(
            "item",
            item_id,
            message=f"Item {item_id} not found in original transaction {original_transaction_id}",
        )
        self.details["original_transaction_id"] = original_transaction_id
        self.original_transaction_id = original_transaction_id
        self.item_id = item_id


# =============================================================================
# BUSINESS RULES
# =============================================================================

class OverReturnError(BackofficeError):
    code = "OVER_RETURN"
    http_status = 409

    def __init__(self, item_id: int, requested: Any, available: Any, original: Any, already_returned: Any):
        super().__init__(
            f"Item {item_id}: cannot return {requested} units. Only {available} units available "
            f"({original} original, {already_returned} already returned)",
            item_id=item_id,
            requested=str(requested),
            available=str(available),
            original_quantity=str(original),
            already_returned=str(already_returned),
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class ReturnValidationError(ValidationError):
    """Every per-item return problem, batched into one response."""

    code = "RETURN_VALIDATION_FAILED"

    def __init__(self, errors: list[BackofficeError]):
        super().__init__(
            "Return validation failed: " + "; ".join(e.message for e in errors),
            errors=[e.to_dict() for e in errors],
        )
        self.errors = errors
        if self.has_over_return:
            self.http_status = OverReturnError.http_status

    @property
    def has_over_return(self) -> bool:
        return any(isinstance(e, OverReturnError) for e in self.errors)


class InsufficientStockError(BackofficeError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, item_id: int, warehouse_id: int | None, on_hand: Any, requested: Any):
        super().__init__(
            f"Insufficient stock for item {item_id}. On-hand: {on_hand}, requested: {requested}",
            item_id=item_id,
            warehouse_id=warehouse_id,
            on_hand=str(on_hand),
            requested=str(requested),
        )


class ImmutableRecordError(BackofficeError):
    code = "IMMUTABLE_RECORD"
    http_status = 409


# =============================================================================
# UNIT OF WORK
# =============================================================================

class ConcurrencyConflictError(BackofficeError):
    code = "CONCURRENCY_CONFLICT"
    http_status = 409
    retryable = True


class PostingCancelledError(BackofficeError):
    code = "POSTING_CANCELLED"
    http_status = 409


class LedgerImbalanceError(BackofficeError):
    """Debits and credits of one batch differ. Always a bug, never user input."""

    code = "LEDGER_IMBALANCE"
    http_status = 500


class PersistenceError(BackofficeError):
    code = "PERSISTENCE_ERROR"
    http_status = 500
