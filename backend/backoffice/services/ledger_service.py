# Overview: Balanced double-entry posting for invoices, returns and manual reversals.

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from ..errors import LedgerImbalanceError, NotFoundError, ValidationError
from ..extensions import db
from ..models import LedgerEntry
from ..models.transactions import (
    KIND_PURCHASE,
    KIND_RETURN_OF_PURCHASE,
    KIND_RETURN_OF_SALE,
    KIND_SALE,
)
from ..time_utils import parse_iso_date
from .cache_service import ledger_key
from .tax_service import quantize_money


"""
Double-Entry Ledger Invariants (authoritative)

- Every posting is one batch of LedgerEntry rows sharing a batch_id and one
  (reference_type, reference_id).
- Each entry has exactly one non-zero side; neither side is negative.
- Per batch SUM(debit) == SUM(credit) after rounding to cents. This is
  checked before anything is added to the session. A mismatch is a bug in
  the caller, logged CRITICAL and raised as LedgerImbalanceError.
- Entries are append-only. Corrections are new batches (returns, or
  reverse_batch for a manual reversal).

Invoice postings (amounts are the rounded invoice totals):

    sale                      purchase
    Dr AR        grand        Dr Purchases   net
    Dr Discount  discount     Dr Input tax   tax (per code)
    Cr Revenue   net          Cr AP          grand
    Cr Output    tax/code     Cr Discount    discount

    net = grand - tax + discount

Returns post the mirror image of their kind, from the return's own totals.
"""


logger = logging.getLogger(__name__)


ZERO = Decimal("0")
DEBIT = "debit"
CREDIT = "credit"

REVERSAL_REFERENCE_TYPE = "reversal"


@dataclass
class PostingLine:
    account_code: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str | None = None

    @classmethod
    def from_mapping(cls, data) -> "PostingLine":
        if isinstance(data, PostingLine):
            return data
        if not isinstance(data, dict):
            raise ValidationError("Ledger entries must be mappings", field="entries")
        return cls(
            account_code=data.get("account_code"),
            debit=_amount(data.get("debit"), "debit"),
            credit=_amount(data.get("credit"), "credit"),
            description=data.get("description"),
        )


def _amount(value, field: str) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip() or "0")
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    return number


class LedgerPoster:

    def __init__(self, accounts, account_map: dict, *, places: int = 2):
        self.accounts = accounts
        self.account_map = dict(account_map)
        self.places = places

    def account_for(self, role: str) -> str:
        try:
            return self.account_map[role]
        except KeyError:
            raise ValidationError(f"No ledger account configured for {role!r}", field="LEDGER_ACCOUNTS")

    # -------------------------------------------------------------------------
    # Core posting
    # -------------------------------------------------------------------------

    def _validate_lines(self, entries) -> list[PostingLine]:
        lines = []
        for index, raw in enumerate(entries):
            line = PostingLine.from_mapping(raw)
            if not line.account_code:
                raise ValidationError(f"Entry {index}: account_code is required", field="account_code")
            # sides are checked on the rounded amounts
            line.debit = quantize_money(_amount(line.debit, "debit"), self.places)
            line.credit = quantize_money(_amount(line.credit, "credit"), self.places)
            if line.debit < 0 or line.credit < 0:
                raise ValidationError(
                    f"Entry {index}: debit and credit cannot be negative",
                    field="debit" if line.debit < 0 else "credit",
                )
            if (line.debit > 0) == (line.credit > 0):
                raise ValidationError(
                    f"Entry {index}: exactly one of debit or credit must be non-zero",
                    field="debit",
                    account_code=line.account_code,
                )
            lines.append(line)
        if not lines:
            raise ValidationError("A ledger batch needs at least one entry", field="entries")
        return lines

    def post(
        self,
        uow,
        entries,
        *,
        entry_date,
        reference_type: str,
        reference_id,
        description: str,
    ) -> tuple[str, list[LedgerEntry]]:
        """
        Validate and append one balanced batch. Returns (batch_id, entries).
        """
        uow.require_active()

        posting_date = parse_iso_date(entry_date)
        if posting_date is None:
            raise ValidationError("Entry date is required", field="date")
        if not reference_type or reference_id is None:
            raise ValidationError("Ledger postings must reference a document", field="reference")

        lines = self._validate_lines(entries)

        total_debit = sum((l.debit for l in lines), ZERO)
        total_credit = sum((l.credit for l in lines), ZERO)
        if total_debit != total_credit:
            logger.critical(
                "ledger imbalance for %s:%s debit=%s credit=%s",
                reference_type, reference_id, total_debit, total_credit,
            )
            raise LedgerImbalanceError(
                f"Ledger batch for {reference_type} {reference_id} is not balanced: "
                f"debit {total_debit} != credit {total_credit}",
                reference_type=reference_type,
                reference_id=str(reference_id),
                total_debit=str(total_debit),
                total_credit=str(total_credit),
            )

        for line in lines:
            self.accounts.require_active(line.account_code)

        batch_id = uuid.uuid4().hex
        rows = []
        for line in lines:
            row = LedgerEntry(
                batch_id=batch_id,
                account_code=line.account_code,
                entry_date=posting_date,
                description=line.description or description,
                debit=line.debit,
                credit=line.credit,
                reference_type=reference_type,
                reference_id=str(reference_id),
            )
            db.session.add(row)
            rows.append(row)
            uow.invalidate(ledger_key(line.account_code))
        db.session.flush()

        logger.debug("ledger batch %s posted for %s:%s (%d entries, %s)",
                     batch_id, reference_type, reference_id, len(rows), total_debit)
        return batch_id, rows

    # -------------------------------------------------------------------------
    # Invoice postings
    # -------------------------------------------------------------------------

    def _document_lines(self, txn, tax_totals, *, is_sale: bool, mirror: bool) -> list[PostingLine]:
        grand = abs(Decimal(txn.grand_total))
        discount = abs(Decimal(txn.total_discount))
        taxes = OrderedDict()
        for total in tax_totals:
            amount = abs(Decimal(total.tax_amount))
            if amount > 0:
                taxes[total.account_code] = taxes.get(total.account_code, ZERO) + amount
        net = grand - sum(taxes.values(), ZERO) + discount

        if is_sale:
            party_side = [(self.account_for("accounts_receivable"), grand),
                          (self.account_for("sales_discount"), discount)]
            main_side = [(self.account_for("sales_revenue"), net)] + list(taxes.items())
            debit_side, credit_side = party_side, main_side
        else:
            main_side = [(self.account_for("purchases"), net)] + list(taxes.items())
            party_side = [(self.account_for("accounts_payable"), grand),
                          (self.account_for("purchase_discount"), discount)]
            debit_side, credit_side = main_side, party_side

        if mirror:
            debit_side, credit_side = credit_side, debit_side

        lines = [PostingLine(code, debit=amount) for code, amount in debit_side if amount > 0]
        lines += [PostingLine(code, credit=amount) for code, amount in credit_side if amount > 0]
        return lines

    def _post_document(self, uow, txn, tax_totals, *, is_sale: bool, mirror: bool, description: str):
        lines = self._document_lines(txn, tax_totals, is_sale=is_sale, mirror=mirror)
        if not lines:
            logger.info("%s %s has no monetary value; no ledger batch", txn.kind, txn.reference_number)
            return None, []
        return self.post(
            uow,
            lines,
            entry_date=txn.transaction_date,
            reference_type=txn.kind,
            reference_id=txn.id,
            description=description,
        )

    def post_for_sale(self, uow, invoice, tax_totals):
        return self._post_document(
            uow, invoice, tax_totals, is_sale=True, mirror=False,
            description=f"Sales invoice {invoice.reference_number}",
        )

    def post_for_purchase(self, uow, invoice, tax_totals):
        return self._post_document(
            uow, invoice, tax_totals, is_sale=False, mirror=False,
            description=f"Purchase invoice {invoice.reference_number}",
        )

    def post_for_sale_return(self, uow, return_invoice, tax_totals, original_invoice):
        return self._post_document(
            uow, return_invoice, tax_totals, is_sale=True, mirror=True,
            description=f"Sales return {return_invoice.reference_number} "
                        f"against {original_invoice.reference_number}",
        )

    def post_for_purchase_return(self, uow, return_invoice, tax_totals, original_invoice):
        return self._post_document(
            uow, return_invoice, tax_totals, is_sale=False, mirror=True,
            description=f"Purchase return {return_invoice.reference_number} "
                        f"against {original_invoice.reference_number}",
        )

    def post_for_transaction(self, uow, txn, tax_totals, original=None):
        if txn.kind == KIND_SALE:
            return self.post_for_sale(uow, txn, tax_totals)
        if txn.kind == KIND_PURCHASE:
            return self.post_for_purchase(uow, txn, tax_totals)
        if txn.kind == KIND_RETURN_OF_SALE:
            return self.post_for_sale_return(uow, txn, tax_totals, original)
        if txn.kind == KIND_RETURN_OF_PURCHASE:
            return self.post_for_purchase_return(uow, txn, tax_totals, original)
        raise ValidationError(f"Unknown transaction kind {txn.kind!r}", field="kind")

    # -------------------------------------------------------------------------
    # Reads and manual reversal
    # -------------------------------------------------------------------------

    def entries_for_reference(self, reference_type: str, reference_id) -> list[LedgerEntry]:
        return (
            db.session.query(LedgerEntry)
            .filter(
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == str(reference_id),
            )
            .order_by(LedgerEntry.id.asc())
            .all()
        )

    def reverse_batch(self, uow, reference_type: str, reference_id, reason: str, entry_date=None):
        """
        Post a batch that swaps debit and credit of every entry recorded for
        a reference. The reversal is referenced as ("reversal",
        "<type>:<id>") and a reference can be reversed only once.
        """
        uow.require_active()
        if not reason:
            raise ValidationError("A reason is required to reverse ledger entries", field="reason")

        originals = self.entries_for_reference(reference_type, reference_id)
        if not originals:
            raise NotFoundError("ledger entries", f"{reference_type}:{reference_id}")

        reversal_id = f"{reference_type}:{reference_id}"
        if self.entries_for_reference(REVERSAL_REFERENCE_TYPE, reversal_id):
            raise ValidationError(f"Ledger entries for {reversal_id} were already reversed", field="reference")

        lines = [
            PostingLine(entry.account_code, debit=Decimal(entry.credit), credit=Decimal(entry.debit))
            for entry in originals
        ]
        return self.post(
            uow,
            lines,
            entry_date=entry_date or originals[0].entry_date,
            reference_type=REVERSAL_REFERENCE_TYPE,
            reference_id=reversal_id,
            description=f"Reversal of {reversal_id}: {reason}",
        )

    def unbalanced_batches(self) -> list[dict]:
        """Batches whose debits and credits differ (should always be empty)."""
        sums = defaultdict(lambda: [ZERO, ZERO])
        rows = db.session.query(LedgerEntry.batch_id, LedgerEntry.debit, LedgerEntry.credit).all()
        for batch_id, debit, credit in rows:
            sums[batch_id][0] += Decimal(debit)
            sums[batch_id][1] += Decimal(credit)
        return [
            {"batch_id": batch_id, "debit": str(debit), "credit": str(credit)}
            for batch_id, (debit, credit) in sorted(sums.items())
            if quantize_money(debit, self.places) != quantize_money(credit, self.places)
        ]

    def trial_balance(self) -> dict:
        debit = ZERO
        credit = ZERO
        for d, c in db.session.query(LedgerEntry.debit, LedgerEntry.credit).all():
            debit += Decimal(d)
            credit += Decimal(c)
        return {
            "total_debit": str(quantize_money(debit, self.places)),
            "total_credit": str(quantize_money(credit, self.places)),
            "balanced": quantize_money(debit, self.places) == quantize_money(credit, self.places),
        }
