from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import InvalidQuantityOrPrice, ValidationError
from .models.transactions import KIND_PURCHASE, KIND_SALE
from .services.quantity_service import PRICE_PLACES, QUANTITY_PLACES, require_places
from .services.tax_service import DISCOUNT_PERCENT, DISCOUNT_TYPES
from .time_utils import parse_iso_date


# Largest money value a Numeric(14, 2) column holds
MAX_AMOUNT = Decimal("999999999999.99")

INVOICE_KINDS = (KIND_SALE, KIND_PURCHASE)


def require_mapping(payload: Any, name: str = "payload") -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError(f"Invalid JSON {name}")
    return payload


def parse_int(value: Any, field_name: str, *, required: bool = True) -> int | None:
    """
    Strict integer: ints and digit strings only. Floats, booleans and
    scientific notation are rejected.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field_name} must be a plain integer", field=field_name)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field_name} must be an integer", field=field_name)
    raise ValidationError(f"{field_name} must be an integer", field=field_name)


def parse_decimal(
    value: Any,
    field_name: str,
    *,
    required: bool = True,
    default: Decimal | None = None,
    minimum: Decimal | None = Decimal("0"),
    places: int | None = None,
    error=InvalidQuantityOrPrice,
) -> Decimal | None:
    """
    Numbers and numeric strings to Decimal (floats go through str()).

    `places` caps the fractional digits so that what is priced is exactly
    what the column stores.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required and default is None:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return default
    if isinstance(value, bool):
        raise error(f"{field_name} must be a number", field=field_name)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise error(f"{field_name} must be a number", field=field_name)
    if not number.is_finite():
        raise error(f"{field_name} must be a finite number", field=field_name)
    if minimum is not None and number < minimum:
        raise error(f"{field_name} must be >= {minimum}", field=field_name)
    if abs(number) > MAX_AMOUNT:
        raise error(f"{field_name} exceeds {MAX_AMOUNT}", field=field_name)
    if places is not None:
        require_places(number, places, field_name, error)
    return number


def parse_bool(value: Any, field_name: str, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", ""):
        return False
    if isinstance(value, int):
        return bool(value)
    raise ValidationError(f"{field_name} must be a boolean", field=field_name)


def parse_date(value: Any, field_name: str = "date", default: date | None = None) -> date | None:
    try:
        parsed = parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an ISO-8601 date", field=field_name)
    return parsed if parsed is not None else default


def parse_tax_codes(value: Any) -> list[str] | None:
    """None means "use the item's defaults"; [] means untaxed."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValidationError("tax_codes must be a list of codes", field="tax_codes")
    codes = []
    for code in value:
        if not isinstance(code, str):
            raise ValidationError("tax_codes must be a list of codes", field="tax_codes")
        code = code.strip().upper()
        if code and code not in codes:
            codes.append(code)
    return codes


def _text(value: Any, field_name: str, max_length: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{field_name} exceeds max length {max_length}", field=field_name)
    return text or None


@dataclass
class InvoiceLineInput:
    item_id: int
    unit_price: Decimal
    quantity: Decimal | None = None
    box_qty: Decimal | None = None
    unit_qty: Decimal | None = None
    discount: Decimal = Decimal("0")
    discount_type: str = DISCOUNT_PERCENT
    tax_codes: list[str] | None = None
    warehouse_id: int | None = None


@dataclass
class InvoiceInput:
    kind: str
    transaction_date: date | None
    counterparty_id: str | None
    is_tax_inclusive: bool
    notes: str | None
    lines: list[InvoiceLineInput] = field(default_factory=list)


@dataclass
class ReturnInput:
    original_transaction_id: int
    transaction_date: date | None
    items: list[dict]
    reason: str | None
    notes: str | None


def parse_invoice_line(raw: Any, index: int) -> InvoiceLineInput:
    raw = require_mapping(raw, f"line {index}")
    discount_type = (raw.get("discount_type") or DISCOUNT_PERCENT).strip().lower()
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError(
            f"lines[{index}].discount_type must be one of {', '.join(DISCOUNT_TYPES)}",
            field="discount_type",
        )

    quantity = parse_decimal(raw.get("quantity"), "quantity", required=False, places=QUANTITY_PLACES)
    box_qty = parse_decimal(raw.get("box_qty"), "box_qty", required=False, places=QUANTITY_PLACES)
    unit_qty = parse_decimal(raw.get("unit_qty"), "unit_qty", required=False, places=QUANTITY_PLACES)
    if quantity is None and box_qty is None and unit_qty is None:
        raise ValidationError(f"lines[{index}]: quantity (or box_qty / unit_qty) is required", field="quantity")
    if quantity is not None and (box_qty is not None or unit_qty is not None):
        raise ValidationError(f"lines[{index}]: give quantity or box_qty / unit_qty, not both", field="quantity")

    return InvoiceLineInput(
        item_id=parse_int(raw.get("item_id"), "item_id"),
        unit_price=parse_decimal(raw.get("unit_price"), "unit_price", places=PRICE_PLACES),
        quantity=quantity,
        box_qty=box_qty,
        unit_qty=unit_qty,
        discount=parse_decimal(
            raw.get("discount"), "discount", required=False, default=Decimal("0"), places=PRICE_PLACES,
        ),
        discount_type=discount_type,
        tax_codes=parse_tax_codes(raw.get("tax_codes")),
        warehouse_id=parse_int(raw.get("warehouse_id"), "warehouse_id", required=False),
    )


def parse_invoice_payload(payload: Any) -> InvoiceInput:
    data = require_mapping(payload)
    kind = (data.get("kind") or "").strip().lower()
    if kind not in INVOICE_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(INVOICE_KINDS)}", field="kind")

    raw_lines = data.get("lines")
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("At least one line is required", field="lines")

    counterparty = data.get("counterparty_id")
    return InvoiceInput(
        kind=kind,
        transaction_date=parse_date(data.get("date")),
        counterparty_id=_text(counterparty, "counterparty_id", 64) if counterparty is not None else None,
        is_tax_inclusive=parse_bool(data.get("is_tax_inclusive"), "is_tax_inclusive"),
        notes=_text(data.get("notes"), "notes", 4000),
        lines=[parse_invoice_line(raw, i) for i, raw in enumerate(raw_lines)],
    )


def parse_return_payload(payload: Any, original_transaction_id: int | None = None) -> ReturnInput:
    data = require_mapping(payload)
    if original_transaction_id is None:
        original_transaction_id = parse_int(data.get("original_transaction_id"), "original_transaction_id")

    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one item is required", field="items")
    for i, item in enumerate(items):
        require_mapping(item, f"items[{i}]")

    return ReturnInput(
        original_transaction_id=original_transaction_id,
        transaction_date=parse_date(data.get("date")),
        items=items,
        reason=_text(data.get("reason"), "reason", 255),
        notes=_text(data.get("notes"), "notes", 4000),
    )
