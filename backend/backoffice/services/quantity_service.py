# Overview: Pure packaging arithmetic (boxes, loose units, cartons) for invoice lines.

"""
Box / Unit / Carton Conversion

Items are stocked in units. Invoices may quote quantities as boxes plus loose
units, each with its own rate; boxes are shipped in cartons.

    total units = boxes * pack_size + loose units
    cartons     = ceil(boxes / boxes_per_carton)

Every function here is side-effect free and raises InvalidQuantity on
negative quantities or non-positive pack sizes. Arithmetic is Decimal so
rates and fractional boxes stay exact.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR

from ..errors import InvalidQuantity


DEFAULT_BOXES_PER_CARTON = 12

# Stored scale of quantities (units) and of unit prices / discounts
QUANTITY_PLACES = 3
PRICE_PLACES = 4

# Largest quantity a Numeric(14, 3) column holds
MAX_QUANTITY = Decimal("99999999999.999")


def to_decimal(value, field: str = "quantity") -> Decimal:
    """Finite Decimal or InvalidQuantity; a missing value is an error, not zero."""
    if isinstance(value, bool):
        raise InvalidQuantity(f"{field} must be a number", field=field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidQuantity(f"{field} is required", field=field)
    if isinstance(value, Decimal):
        number = value
    else:
        try:
            # str() keeps floats like 0.1 from expanding to binary noise
            number = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidQuantity(f"{field} must be a number", field=field)
    if not number.is_finite():
        raise InvalidQuantity(f"{field} must be a finite number", field=field)
    if abs(number) > MAX_QUANTITY:
        raise InvalidQuantity(f"{field} exceeds {MAX_QUANTITY}", field=field)
    return number


def require_places(number: Decimal, places: int, field: str, error=InvalidQuantity) -> Decimal:
    """Reject values finer than the column that will store them."""
    if number != number.quantize(Decimal(1).scaleb(-places)):
        raise error(f"{field} allows at most {places} decimal places", field=field, places=places)
    return number


def _require_pack_size(pack_size, field: str = "pack_size") -> Decimal:
    size = to_decimal(pack_size, field)
    if size <= 0:
        raise InvalidQuantity(f"{field} must be greater than 0", field=field)
    return size


def total_units(box_qty=0, unit_qty=0, pack_size=1) -> Decimal:
    boxes = to_decimal(box_qty, "box_qty")
    units = to_decimal(unit_qty, "unit_qty")
    if boxes < 0 or units < 0:
        raise InvalidQuantity("Quantities cannot be negative")
    size = _require_pack_size(pack_size)
    return boxes * size + units


def breakdown(total, pack_size) -> tuple[Decimal, Decimal]:
    """Split a unit count into (full boxes, remaining units)."""
    units = to_decimal(total, "total_units")
    if units < 0:
        raise InvalidQuantity("Total units cannot be negative", field="total_units")
    size = _require_pack_size(pack_size)
    boxes = (units / size).to_integral_value(rounding=ROUND_FLOOR)
    return boxes, units - boxes * size


def carton_count(box_qty, boxes_per_carton=DEFAULT_BOXES_PER_CARTON) -> int:
    boxes = to_decimal(box_qty, "box_qty")
    if boxes < 0:
        raise InvalidQuantity("Box quantity cannot be negative", field="box_qty")
    per_carton = _require_pack_size(boxes_per_carton, "boxes_per_carton")
    return int((boxes / per_carton).to_integral_value(rounding=ROUND_CEILING))


def unit_rate_to_box_rate(unit_rate, pack_size) -> Decimal:
    rate = to_decimal(unit_rate, "unit_rate")
    if rate < 0:
        raise InvalidQuantity("Rates cannot be negative", field="unit_rate")
    return rate * _require_pack_size(pack_size)


def box_rate_to_unit_rate(box_rate, pack_size) -> Decimal:
    rate = to_decimal(box_rate, "box_rate")
    if rate < 0:
        raise InvalidQuantity("Rates cannot be negative", field="box_rate")
    return rate / _require_pack_size(pack_size)


def line_amount(box_qty=0, box_rate=0, unit_qty=0, unit_rate=0) -> Decimal:
    """Line total priced with separate box and unit rates."""
    boxes = to_decimal(box_qty, "box_qty")
    units = to_decimal(unit_qty, "unit_qty")
    b_rate = to_decimal(box_rate, "box_rate")
    u_rate = to_decimal(unit_rate, "unit_rate")
    if boxes < 0 or units < 0:
        raise InvalidQuantity("Quantities cannot be negative")
    if b_rate < 0 or u_rate < 0:
        raise InvalidQuantity("Rates cannot be negative")
    return boxes * b_rate + units * u_rate


def effective_unit_rate(box_qty, box_rate, unit_qty, unit_rate, pack_size) -> Decimal:
    amount = line_amount(box_qty, box_rate, unit_qty, unit_rate)
    units = total_units(box_qty, unit_qty, pack_size)
    if units == 0:
        return Decimal("0")
    return amount / units


def _plain(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return text


def _label(count: Decimal, singular: str, plural: str) -> str:
    return f"{_plain(count)} {singular if count == 1 else plural}"


def format_display(cartons=0, boxes=0, units=0) -> str:
    """
    "1 Carton + 3 Boxes + 4 Units". Zero parts are omitted; all zero gives "0".
    """
    parts = []
    for value, singular, plural in (
        (cartons, "Carton", "Cartons"),
        (boxes, "Box", "Boxes"),
        (units, "Unit", "Units"),
    ):
        count = to_decimal(value)
        if count > 0:
            parts.append(_label(count, singular, plural))
    return " + ".join(parts) or "0"


def invoice_carton_summary(lines, boxes_per_carton=DEFAULT_BOXES_PER_CARTON) -> dict:
    """
    Carton count per line and for the whole invoice.

    Each line is a mapping with "box_qty" (and optionally "item_id"). The
    invoice total is ceil(sum of boxes / boxes_per_carton), not the sum of
    per-line cartons, since partial cartons are packed together.
    """
    per_line = []
    total_boxes = Decimal("0")
    for index, line in enumerate(lines):
        boxes = to_decimal(line.get("box_qty", 0), "box_qty")
        per_line.append({
            "line": index,
            "item_id": line.get("item_id"),
            "box_qty": _plain(boxes),
            "cartons": carton_count(boxes, boxes_per_carton),
        })
        total_boxes += boxes
    return {
        "lines": per_line,
        "total_boxes": _plain(total_boxes),
        "total_cartons": carton_count(total_boxes, boxes_per_carton),
    }
