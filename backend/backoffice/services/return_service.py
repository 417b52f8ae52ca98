# Overview: Returnable-quantity checks for partial returns against an original transaction.

"""
Return Validation

WHY: A sale or purchase can be returned in several partial returns. The sum
of everything returned for an item may never exceed what the original
transaction carried.

    already_returned(original, item) = SUM(|quantity|) over every
                                       non-cancelled return of the original
    available = original quantity - already_returned

DESIGN PRINCIPLES:
- History is read fresh on every call, inside the caller's unit of work and
  retry loop. Nothing here is cached.
- validate() collects every per-item problem before reporting, so a caller
  sees all of them at once.
- Duplicate item ids in one request are summed before comparison.
- Pure reads: nothing is written here. The posting orchestrator persists the
  return only after validation passed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal

from ..errors import (
    BackofficeError,
    InvalidQuantity,
    ItemNotInOriginalTransaction,
    OverReturnError,
    ReturnValidationError,
    ValidationError,
)
from ..models.transactions import RETURN_KINDS, STATUS_CONFIRMED
from .quantity_service import QUANTITY_PLACES, require_places, to_decimal


ZERO = Decimal("0")


@dataclass
class ReturnCheck:
    valid: bool
    errors: list[BackofficeError] = field(default_factory=list)
    validated_items: list[dict] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.valid:
            raise ReturnValidationError(self.errors)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "validated_items": [
                {k: (str(v) if isinstance(v, Decimal) else v) for k, v in item.items() if k != "lines"}
                for item in self.validated_items
            ],
        }


class ReturnValidator:

    def __init__(self, transactions):
        self.transactions = transactions

    def require_original(self, original_id: int, *, for_update: bool = False):
        original = self.transactions.require(original_id, for_update=for_update)
        if original.kind in RETURN_KINDS:
            raise ValidationError(
                f"Transaction {original_id} is itself a return and cannot be returned",
                field="original_transaction_id",
            )
        if original.status != STATUS_CONFIRMED:
            raise ValidationError(
                f"Only confirmed transactions can be returned. Transaction {original_id} is {original.status}",
                field="original_transaction_id",
            )
        return original

    def _original_items(self, original_id: int) -> "OrderedDict[int, dict]":
        """Original lines grouped by item, in line order."""
        items: OrderedDict[int, dict] = OrderedDict()
        for line in self.transactions.lines_for(original_id):
            entry = items.setdefault(line.item_id, {"quantity": ZERO, "lines": []})
            entry["quantity"] += abs(Decimal(line.quantity))
            entry["lines"].append(line)
        return items

    def _summary(self, item_id: int, entry: dict, returned: Decimal) -> dict:
        first = entry["lines"][0]
        return {
            "item_id": item_id,
            "original_quantity": entry["quantity"],
            "already_returned": returned,
            "available": entry["quantity"] - returned,
            "unit_price": Decimal(first.unit_price),
            "lines": entry["lines"],
        }

    def returnable(self, original_id: int, item_id: int) -> dict:
        self.require_original(original_id)
        items = self._original_items(original_id)
        if item_id not in items:
            raise ItemNotInOriginalTransaction(original_id, item_id)
        returned = self.transactions.returned_quantities(original_id).get(item_id, ZERO)
        return self._summary(item_id, items[item_id], returned)

    def list_returnable(self, original_id: int) -> list[dict]:
        """Every item that still has something left to return."""
        self.require_original(original_id)
        items = self._original_items(original_id)
        returned = self.transactions.returned_quantities(original_id)
        summaries = []
        for item_id, entry in items.items():
            summary = self._summary(item_id, entry, returned.get(item_id, ZERO))
            if summary["available"] > 0:
                summaries.append(summary)
        return summaries

    def validate(self, original_id: int, requested_items, *, for_update: bool = False) -> ReturnCheck:
        """
        requested_items: iterable of {"item_id", "quantity"} (quantity > 0).

        Raises NotFoundError / ValidationError for problems with the original
        itself; per-item problems are collected into the returned ReturnCheck.
        """
        self.require_original(original_id, for_update=for_update)

        errors: list[BackofficeError] = []
        requested: OrderedDict[int, Decimal] = OrderedDict()
        for raw in requested_items or ():
            try:
                item_id = int(raw.get("item_id"))
            except (TypeError, ValueError):
                errors.append(ValidationError("item_id must be an integer", field="item_id"))
                continue
            try:
                qty = require_places(to_decimal(raw.get("quantity"), "quantity"), QUANTITY_PLACES, "quantity")
            except InvalidQuantity as exc:
                exc.details["item_id"] = item_id
                errors.append(exc)
                continue
            if qty <= 0:
                errors.append(
                    InvalidQuantity(
                        f"Return quantity for item {item_id} must be greater than 0",
                        field="quantity",
                        item_id=item_id,
                    )
                )
                continue
            requested[item_id] = requested.get(item_id, ZERO) + qty

        if not requested and not errors:
            errors.append(ValidationError("At least one item is required", field="items"))

        items = self._original_items(original_id)
        returned = self.transactions.returned_quantities(original_id)
        validated = []
        for item_id, qty in requested.items():
            if item_id not in items:
                errors.append(ItemNotInOriginalTransaction(original_id, item_id))
                continue
            summary = self._summary(item_id, items[item_id], returned.get(item_id, ZERO))
            if qty > summary["available"]:
                errors.append(
                    OverReturnError(
                        item_id,
                        qty,
                        summary["available"],
                        summary["original_quantity"],
                        summary["already_returned"],
                    )
                )
                continue
            summary["quantity"] = qty
            validated.append(summary)

        return ReturnCheck(valid=not errors, errors=errors, validated_items=validated)
