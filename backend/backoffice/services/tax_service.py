# Overview: Tax and total computation for lines and invoices, inclusive or exclusive.

"""
Tax Engine

MONEY RULES:
- All arithmetic is Decimal and exact; nothing is rounded mid-computation.
- Rounding to cents (ROUND_HALF_UP) happens once, when a final figure is
  presented or stored.
- Invoice presentation: each per-code tax total is rounded once; total_tax is
  the sum of those rounded totals; grand_total is rounded once from the exact
  sums.

PRICING MODES:
- exclusive: the price is net. tax = net * rate, gross = net + tax.
- inclusive: the price already carries the tax. net = gross / (1 + rate),
  tax = gross - net.

MULTIPLE CODES ON ONE LINE:
Codes apply independently to the same taxable base. A code flagged
is_compound applies to (taxable + every non-compound tax) instead. For
inclusive pricing the net is backed out with the combined factor
(1 + sum(simple rates)) * (1 + sum(compound rates)).
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Sequence

from ..errors import InvalidQuantityOrPrice, InvalidRate, ValidationError
from ..time_utils import today


ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")

DISCOUNT_PERCENT = "percent"
DISCOUNT_AMOUNT = "amount"
DISCOUNT_TYPES = (DISCOUNT_PERCENT, DISCOUNT_AMOUNT)


def quantize_money(value, places: int = 2) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return Decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def to_decimal(value, field_name: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidQuantityOrPrice(f"{field_name} must be a number", field=field_name)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidQuantityOrPrice(f"{field_name} must be a number", field=field_name)
    if not number.is_finite():
        raise InvalidQuantityOrPrice(f"{field_name} must be a finite number", field=field_name)
    return number


@dataclass(frozen=True)
class TaxRate:
    code: str
    rate: Decimal
    is_compound: bool = False
    allow_rate_above_one: bool = False
    output_account_code: str | None = None
    input_account_code: str | None = None

    @classmethod
    def from_model(cls, tax_code) -> "TaxRate":
        return cls(
            code=tax_code.code,
            rate=Decimal(tax_code.rate),
            is_compound=bool(tax_code.is_compound),
            allow_rate_above_one=bool(tax_code.allow_rate_above_one),
            output_account_code=tax_code.output_account_code,
            input_account_code=tax_code.input_account_code,
        )


def validate_rate(rate, *, allow_above_one: bool = False, code: str | None = None) -> Decimal:
    value = to_decimal(rate, "rate")
    label = f"Tax rate for {code}" if code else "Tax rate"
    if value < 0:
        raise InvalidRate(f"{label} cannot be negative", field="rate", rate=str(value))
    if value > ONE and not allow_above_one:
        raise InvalidRate(
            f"{label} {value} is above 1.0; rates are fractions (0.18 = 18%)",
            field="rate",
            rate=str(value),
        )
    return value


@dataclass(frozen=True)
class TaxResult:
    taxable: Decimal
    tax: Decimal
    gross: Decimal

    def scaled(self, factor: Decimal) -> "TaxResult":
        return TaxResult(self.taxable * factor, self.tax * factor, self.gross * factor)

    def to_dict(self, places: int = 2) -> dict:
        return {
            "taxable_amount": str(quantize_money(self.taxable, places)),
            "tax_amount": str(quantize_money(self.tax, places)),
            "gross_amount": str(quantize_money(self.gross, places)),
        }


def calculate_tax(amount, rate, is_inclusive: bool, *, allow_rate_above_one: bool = False) -> TaxResult:
    """Single-rate tax on an amount. Exact; round the result for display."""
    value = to_decimal(amount, "amount")
    if value < 0:
        raise InvalidQuantityOrPrice("Amount cannot be negative", field="amount")
    r = validate_rate(rate, allow_above_one=allow_rate_above_one)

    if is_inclusive:
        taxable = value / (ONE + r)
        return TaxResult(taxable=taxable, tax=value - taxable, gross=value)

    tax = value * r
    return TaxResult(taxable=value, tax=tax, gross=value + tax)


@dataclass
class LineTax:
    """Exact breakdown of one line. Amounts are positive magnitudes."""

    unit_price: Decimal
    quantity: Decimal
    discount: Decimal
    discount_type: str
    is_inclusive: bool
    subtotal: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    taxes: "OrderedDict[str, Decimal]" = field(default_factory=OrderedDict)
    rates: dict = field(default_factory=dict)

    @property
    def tax_amount(self) -> Decimal:
        return sum(self.taxes.values(), ZERO)

    @property
    def line_total(self) -> Decimal:
        return self.taxable_amount + self.tax_amount

    def to_dict(self, places: int = 2) -> dict:
        return {
            "subtotal": str(quantize_money(self.subtotal, places)),
            "discount_amount": str(quantize_money(self.discount_amount, places)),
            "taxable_amount": str(quantize_money(self.taxable_amount, places)),
            "taxes": {code: str(quantize_money(v, places)) for code, v in self.taxes.items()},
            "tax_amount": str(quantize_money(self.tax_amount, places)),
            "line_total": str(quantize_money(self.line_total, places)),
        }


def _discount_amount(subtotal: Decimal, discount: Decimal, discount_type: str) -> Decimal:
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError(
            f"discount_type must be one of {', '.join(DISCOUNT_TYPES)}",
            field="discount_type",
        )
    if discount_type == DISCOUNT_PERCENT:
        if discount > HUNDRED:
            raise InvalidQuantityOrPrice("Discount percent cannot exceed 100", field="discount")
        return subtotal * discount / HUNDRED
    if discount > subtotal:
        raise InvalidQuantityOrPrice("Discount cannot exceed the line subtotal", field="discount")
    return discount


def calculate_line_tax(
    unit_price,
    quantity,
    discount=0,
    rates: Sequence[TaxRate] = (),
    is_inclusive: bool = False,
    discount_type: str = DISCOUNT_PERCENT,
) -> LineTax:
    price = to_decimal(unit_price, "unit_price")
    qty = to_decimal(quantity, "quantity")
    disc = to_decimal(discount if discount is not None else 0, "discount")
    if qty < 0:
        raise InvalidQuantityOrPrice("Quantity cannot be negative", field="quantity")
    if price < 0:
        raise InvalidQuantityOrPrice("Unit price cannot be negative", field="unit_price")
    if disc < 0:
        raise InvalidQuantityOrPrice("Discount cannot be negative", field="discount")

    for rate in rates:
        validate_rate(rate.rate, allow_above_one=rate.allow_rate_above_one, code=rate.code)

    subtotal = price * qty
    discount_amount = _discount_amount(subtotal, disc, discount_type)
    base = subtotal - discount_amount

    simple = [r for r in rates if not r.is_compound]
    compound = [r for r in rates if r.is_compound]
    simple_sum = sum((r.rate for r in simple), ZERO)
    compound_sum = sum((r.rate for r in compound), ZERO)

    if is_inclusive:
        taxable = base / ((ONE + simple_sum) * (ONE + compound_sum))
    else:
        taxable = base

    taxes: OrderedDict[str, Decimal] = OrderedDict()
    for r in simple:
        taxes[r.code] = taxes.get(r.code, ZERO) + taxable * r.rate
    compound_base = taxable + sum(taxes.values(), ZERO)
    for r in compound:
        taxes[r.code] = taxes.get(r.code, ZERO) + compound_base * r.rate

    if is_inclusive and taxes:
        # the gross is fixed; put any last-digit remainder on the final code
        last = next(reversed(taxes))
        taxes[last] += base - taxable - sum(taxes.values(), ZERO)

    return LineTax(
        unit_price=price,
        quantity=qty,
        discount=disc,
        discount_type=discount_type,
        is_inclusive=is_inclusive,
        subtotal=subtotal,
        discount_amount=discount_amount,
        taxable_amount=taxable,
        taxes=taxes,
        rates={r.code: r for r in rates},
    )


@dataclass
class InvoiceTax:
    """Exact invoice sums plus the once-rounded presentation figures."""

    lines: list
    subtotal: Decimal
    total_discount: Decimal
    taxable_amount: Decimal
    taxes: "OrderedDict[str, Decimal]"
    places: int = 2

    @property
    def tax_totals(self) -> "OrderedDict[str, Decimal]":
        return OrderedDict((code, quantize_money(v, self.places)) for code, v in self.taxes.items())

    @property
    def total_tax(self) -> Decimal:
        return sum(self.tax_totals.values(), ZERO)

    @property
    def grand_total(self) -> Decimal:
        return quantize_money(self.taxable_amount + sum(self.taxes.values(), ZERO), self.places)

    def rounded(self) -> dict:
        return {
            "subtotal": quantize_money(self.subtotal, self.places),
            "total_discount": quantize_money(self.total_discount, self.places),
            "taxable_amount": quantize_money(self.taxable_amount, self.places),
            "total_tax": self.total_tax,
            "grand_total": self.grand_total,
        }

    def to_dict(self) -> dict:
        payload = {k: str(v) for k, v in self.rounded().items()}
        payload["taxes"] = {code: str(v) for code, v in self.tax_totals.items()}
        payload["lines"] = [line.to_dict(self.places) for line in self.lines]
        return payload


def calculate_invoice_tax(lines: Iterable[LineTax], places: int = 2) -> InvoiceTax:
    lines = list(lines)
    taxes: OrderedDict[str, Decimal] = OrderedDict()
    for line in lines:
        for code, amount in line.taxes.items():
            taxes[code] = taxes.get(code, ZERO) + amount
    return InvoiceTax(
        lines=lines,
        subtotal=sum((l.subtotal for l in lines), ZERO),
        total_discount=sum((l.discount_amount for l in lines), ZERO),
        taxable_amount=sum((l.taxable_amount for l in lines), ZERO),
        taxes=taxes,
        places=places,
    )


class TaxEngine:
    """
    Tax computation against the configured tax codes.

    Codes are resolved through the rate lookup as of the document date;
    the arithmetic is the pure functions above.
    """

    def __init__(self, rates, *, places: int = 2):
        self.rates = rates
        self.places = places

    def resolve(self, codes: Iterable[str], on_date: date | None = None) -> list[TaxRate]:
        on_date = on_date or today()
        resolved = []
        seen = set()
        for code in codes or ():
            if not isinstance(code, str) or not code.strip():
                raise ValidationError("Tax codes must be non-empty strings", field="tax_code", tax_code=repr(code))
            key = code.strip().upper()
            if key in seen:
                continue
            seen.add(key)
            resolved.append(TaxRate.from_model(self.rates.rate_for(key, on_date)))
        return resolved

    def compute_tax(self, amount, tax_code: str, is_inclusive: bool = False, quantity=1, on_date: date | None = None) -> dict:
        """Per-unit tax for `amount` under one code, then scaled by quantity."""
        qty = to_decimal(quantity, "quantity")
        if qty < 0:
            raise InvalidQuantityOrPrice("Quantity cannot be negative", field="quantity")
        rate = self.resolve([tax_code], on_date)[0]
        per_unit = calculate_tax(amount, rate.rate, is_inclusive, allow_rate_above_one=rate.allow_rate_above_one)
        total = per_unit.scaled(qty)
        return {
            "tax_code": rate.code,
            "rate": str(rate.rate),
            "is_inclusive": is_inclusive,
            "quantity": str(qty),
            "per_unit": per_unit.to_dict(self.places),
            "total": total.to_dict(self.places),
        }

    def compute_line_tax(
        self,
        unit_price,
        quantity,
        discount=0,
        tax_codes: Iterable[str] = (),
        is_inclusive: bool = False,
        discount_type: str = DISCOUNT_PERCENT,
        on_date: date | None = None,
    ) -> LineTax:
        rates = self.resolve(tax_codes, on_date)
        return calculate_line_tax(unit_price, quantity, discount, rates, is_inclusive, discount_type)

    def compute_invoice_tax(self, lines: Iterable[dict], is_inclusive: bool = False, on_date: date | None = None) -> InvoiceTax:
        """
        lines: mappings with unit_price, quantity, discount, discount_type and
        tax_codes. A per-line "is_inclusive" overrides the invoice flag.
        """
        computed = []
        for line in lines:
            computed.append(
                self.compute_line_tax(
                    line.get("unit_price"),
                    line.get("quantity"),
                    line.get("discount", 0),
                    line.get("tax_codes") or (),
                    line.get("is_inclusive", is_inclusive),
                    line.get("discount_type") or DISCOUNT_PERCENT,
                    on_date,
                )
            )
        return calculate_invoice_tax(computed, self.places)
