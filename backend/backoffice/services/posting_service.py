# Overview: Atomic create/confirm/return postings spanning transaction, stock and ledger.

"""
Invoice Posting Orchestrator

One request = one UnitOfWork = one database transaction:

    validating       payload, items, warehouses, (returns) returnable quantities
    computing        TaxEngine line and invoice totals
    persisting       Transaction, lines, per-code tax totals, reference number
    adjusting_stock  StockMovementRecorder
    posting_ledger   LedgerPoster (balanced batch)
    committed        cache keys emitted

Any failure before commit rolls back every effect. Optimistic-lock conflicts
(two returns against one original, two postings on one stock balance) retry
the whole sequence, re-reading history each time, up to
POSTING_RETRY_ATTEMPTS before surfacing ConcurrencyConflictError.

Drafts stop after persisting: totals are stored, stock and ledger are
untouched until confirm_invoice().
"""

from __future__ import annotations

import logging
import threading
from decimal import Decimal

from ..errors import InvalidQuantity, NotFoundError, OverReturnError, ValidationError
from ..models import Transaction, TransactionLine, TransactionTaxTotal
from ..models.transactions import (
    KIND_SALE,
    RETURN_KIND_FOR,
    RETURN_KINDS,
    STATUS_CONFIRMED,
    STATUS_DRAFT,
)
from ..time_utils import today, utcnow
from ..validation import (
    InvoiceInput,
    ReturnInput,
    parse_invoice_payload,
    parse_return_payload,
)
from .cache_service import TRANSACTIONS_LIST_KEY, returnable_key, transaction_key
from .document_service import next_document_number
from .quantity_service import total_units
from .tax_service import DISCOUNT_AMOUNT, calculate_invoice_tax, quantize_money
from .unit_of_work import PostingState, run_in_unit_of_work


logger = logging.getLogger(__name__)


ZERO = Decimal("0")


class InvoicePostingOrchestrator:

    def __init__(
        self,
        *,
        transactions,
        items,
        tax_engine,
        return_validator,
        stock,
        ledger,
        cache_sink=None,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
    ):
        self.transactions = transactions
        self.items = items
        self.tax_engine = tax_engine
        self.return_validator = return_validator
        self.stock = stock
        self.ledger = ledger
        self.cache_sink = cache_sink
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def _run(self, func, *, label: str, cancel_event: threading.Event | None = None):
        return run_in_unit_of_work(
            func,
            label=label,
            cache_sink=self.cache_sink,
            cancel_event=cancel_event,
            attempts=self.retry_attempts,
            backoff_base=self.retry_backoff,
        )

    @property
    def places(self) -> int:
        return self.tax_engine.places

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_transaction(self, transaction_id: int) -> dict:
        txn = self.transactions.require(transaction_id)
        payload = txn.to_dict(
            lines=self.transactions.lines_for(txn.id),
            tax_totals=self.transactions.tax_totals_for(txn.id),
        )
        if txn.kind not in RETURN_KINDS:
            payload["return_ids"] = [r.id for r in self.transactions.returns_for(txn.id)]
        return payload

    # -------------------------------------------------------------------------
    # Shared persisting steps
    # -------------------------------------------------------------------------

    def _tax_totals(self, kind: str, invoice_tax, sign: int) -> list[TransactionTaxTotal]:
        rates = {}
        for line in invoice_tax.lines:
            rates.update(line.rates)
        totals = []
        for code, amount in invoice_tax.tax_totals.items():
            rate = rates[code]
            account = rate.output_account_code if kind in (KIND_SALE, RETURN_KIND_FOR[KIND_SALE]) else rate.input_account_code
            totals.append(
                TransactionTaxTotal(
                    tax_code=code,
                    rate=rate.rate,
                    tax_amount=amount * sign,
                    account_code=account,
                )
            )
        return totals

    def _apply_totals(self, txn: Transaction, invoice_tax, sign: int) -> None:
        rounded = invoice_tax.rounded()
        txn.subtotal = rounded["subtotal"] * sign
        txn.total_discount = rounded["total_discount"] * sign
        txn.taxable_amount = rounded["taxable_amount"] * sign
        txn.total_tax = rounded["total_tax"] * sign
        txn.grand_total = rounded["grand_total"] * sign

    def _line_row(self, number: int, line_tax, *, item_id, warehouse_id, tax_codes, sign: int,
                  original_line_id=None) -> TransactionLine:
        places = self.places
        return TransactionLine(
            line_number=number,
            item_id=item_id,
            warehouse_id=warehouse_id,
            original_line_id=original_line_id,
            quantity=line_tax.quantity * sign,
            unit_price=line_tax.unit_price,
            discount=line_tax.discount,
            discount_type=line_tax.discount_type,
            tax_codes=",".join(tax_codes) if tax_codes else None,
            subtotal=quantize_money(line_tax.subtotal, places) * sign,
            discount_amount=quantize_money(line_tax.discount_amount, places) * sign,
            taxable_amount=quantize_money(line_tax.taxable_amount, places) * sign,
            tax_amount=quantize_money(line_tax.tax_amount, places) * sign,
            line_total=quantize_money(line_tax.line_total, places) * sign,
        )

    def _post_side_effects(self, uow, txn, lines, tax_totals, original=None) -> None:
        uow.advance(PostingState.ADJUSTING_STOCK)
        self.stock.apply_transaction(uow, txn, lines)

        uow.advance(PostingState.POSTING_LEDGER)
        self.ledger.post_for_transaction(uow, txn, tax_totals, original)

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def _line_quantity(self, line, item) -> Decimal:
        if line.quantity is not None:
            qty = line.quantity
        else:
            qty = total_units(line.box_qty or 0, line.unit_qty or 0, item.pack_size or 1)
        if qty <= 0:
            raise InvalidQuantity(f"Quantity for item {item.id} must be greater than 0", field="quantity", item_id=item.id)
        return qty

    def create_invoice(self, data, *, confirm: bool = True, cancel_event: threading.Event | None = None) -> dict:
        """
        Create a sale or purchase invoice. With confirm=False the invoice is
        stored as a draft (totals only, no stock or ledger effect).
        """
        invoice: InvoiceInput = data if isinstance(data, InvoiceInput) else parse_invoice_payload(data)

        def _op(uow):
            # validating
            on_date = invoice.transaction_date or today()
            resolved = []
            for line in invoice.lines:
                item = self.items.require_active_item(line.item_id)
                self.items.require_active_warehouse(line.warehouse_id)
                codes = line.tax_codes if line.tax_codes is not None else item.default_tax_code_list
                resolved.append((line, item, self._line_quantity(line, item), codes))

            uow.advance(PostingState.COMPUTING)
            line_taxes = [
                self.tax_engine.compute_line_tax(
                    line.unit_price,
                    qty,
                    line.discount,
                    codes,
                    invoice.is_tax_inclusive,
                    line.discount_type,
                    on_date,
                )
                for line, item, qty, codes in resolved
            ]
            invoice_tax = calculate_invoice_tax(line_taxes, self.places)

            uow.advance(PostingState.PERSISTING)
            txn = Transaction(
                reference_number=next_document_number(uow, kind=invoice.kind),
                kind=invoice.kind,
                status=STATUS_CONFIRMED if confirm else STATUS_DRAFT,
                counterparty_id=invoice.counterparty_id,
                transaction_date=on_date,
                is_tax_inclusive=invoice.is_tax_inclusive,
                notes=invoice.notes,
                confirmed_at=utcnow() if confirm else None,
            )
            self._apply_totals(txn, invoice_tax, 1)
            lines = [
                self._line_row(
                    number,
                    line_tax,
                    item_id=item.id,
                    warehouse_id=line.warehouse_id,
                    tax_codes=codes,
                    sign=1,
                )
                for number, ((line, item, qty, codes), line_tax) in enumerate(zip(resolved, line_taxes), start=1)
            ]
            tax_totals = self._tax_totals(invoice.kind, invoice_tax, 1)
            self.transactions.add(txn, lines, tax_totals)

            if confirm:
                self._post_side_effects(uow, txn, lines, tax_totals)

            uow.invalidate(transaction_key(txn.id), TRANSACTIONS_LIST_KEY)
            txn_id = txn.id
            uow.commit()
            logger.info("%s %s %s (id=%s)", txn.kind, txn.reference_number,
                        "confirmed" if confirm else "saved as draft", txn_id)
            return txn_id

        txn_id = self._run(_op, label=f"create {invoice.kind}", cancel_event=cancel_event)
        return self.get_transaction(txn_id)

    def confirm_invoice(self, transaction_id: int, *, cancel_event: threading.Event | None = None) -> dict:
        def _op(uow):
            txn = self.transactions.require(transaction_id, for_update=True)
            if txn.status != STATUS_DRAFT:
                raise ValidationError(
                    f"Only draft transactions can be confirmed. Transaction {transaction_id} is {txn.status}",
                    field="status",
                )
            lines = self.transactions.lines_for(txn.id)
            tax_totals = self.transactions.tax_totals_for(txn.id)
            for line in lines:
                self.items.require_active_item(line.item_id)
                self.items.require_active_warehouse(line.warehouse_id)

            uow.advance(PostingState.PERSISTING)
            txn.status = STATUS_CONFIRMED
            txn.confirmed_at = utcnow()

            self._post_side_effects(uow, txn, lines, tax_totals)

            uow.invalidate(transaction_key(txn.id), TRANSACTIONS_LIST_KEY)
            uow.commit()
            logger.info("%s (id=%s) confirmed", txn.reference_number, transaction_id)
            return transaction_id

        self._run(_op, label=f"confirm transaction {transaction_id}", cancel_event=cancel_event)
        return self.get_transaction(transaction_id)

    def post_ledger_for_transaction(self, transaction_id: int) -> dict:
        """
        Post the ledger batch of a confirmed invoice that has none (repair
        path). Refuses when a batch already exists for the reference.
        """
        def _op(uow):
            txn = self.transactions.require(transaction_id, for_update=True)
            if txn.status != STATUS_CONFIRMED:
                raise ValidationError(f"Transaction {transaction_id} is {txn.status}, not confirmed", field="status")
            if self.ledger.entries_for_reference(txn.kind, txn.id):
                raise ValidationError(f"Ledger entries already exist for {txn.kind} {txn.id}", field="reference")
            original = self.transactions.get(txn.original_transaction_id) if txn.original_transaction_id else None
            uow.advance(PostingState.POSTING_LEDGER)
            batch_id, rows = self.ledger.post_for_transaction(
                uow, txn, self.transactions.tax_totals_for(txn.id), original
            )
            payload = {"batch_id": batch_id, "entries": [row.to_dict() for row in rows]}
            uow.commit()
            return payload

        return self._run(_op, label=f"post ledger for transaction {transaction_id}")

    # -------------------------------------------------------------------------
    # Returns
    # -------------------------------------------------------------------------

    def validate_return(self, original_transaction_id: int, items) -> dict:
        return self.return_validator.validate(original_transaction_id, items).to_dict()

    def list_returnable_items(self, original_transaction_id: int) -> list[dict]:
        return [
            {k: (str(v) if isinstance(v, Decimal) else v) for k, v in row.items() if k != "lines"}
            for row in self.return_validator.list_returnable(original_transaction_id)
        ]

    def _allocate(self, original_id: int, validated_items) -> list[tuple]:
        """
        Spread each returned item quantity over the original lines carrying
        that item, oldest line first, skipping what earlier returns took.
        """
        returned_by_line = self.transactions.returned_by_line(original_id)
        allocations = []
        for entry in validated_items:
            remaining = entry["quantity"]
            for line in entry["lines"]:
                if remaining <= 0:
                    break
                open_qty = abs(Decimal(line.quantity)) - returned_by_line.get(line.id, ZERO)
                if open_qty <= 0:
                    continue
                take = min(open_qty, remaining)
                allocations.append((line, take))
                remaining -= take
            if remaining > 0:
                raise OverReturnError(
                    entry["item_id"],
                    entry["quantity"],
                    entry["quantity"] - remaining,
                    entry["original_quantity"],
                    entry["already_returned"],
                )
        return allocations

    def create_return(self, data, original_transaction_id: int | None = None, *,
                      cancel_event: threading.Event | None = None) -> dict:
        """
        Post a partial (or full) return against a confirmed sale or purchase.
        Fails closed: if any item does not validate nothing is written.
        """
        request: ReturnInput = (
            data if isinstance(data, ReturnInput) else parse_return_payload(data, original_transaction_id)
        )
        original_id = request.original_transaction_id

        def _op(uow):
            original = self.return_validator.require_original(original_id, for_update=True)
            check = self.return_validator.validate(original_id, request.items)
            check.raise_for_errors()

            uow.advance(PostingState.COMPUTING)
            kind = RETURN_KIND_FOR[original.kind]
            allocations = self._allocate(original_id, check.validated_items)
            line_taxes = []
            for line, qty in allocations:
                discount = Decimal(line.discount)
                if line.discount_type == DISCOUNT_AMOUNT and discount:
                    discount = discount * qty / abs(Decimal(line.quantity))
                line_taxes.append(
                    self.tax_engine.compute_line_tax(
                        Decimal(line.unit_price),
                        qty,
                        discount,
                        line.tax_code_list,
                        original.is_tax_inclusive,
                        line.discount_type,
                        original.transaction_date,
                    )
                )
            invoice_tax = calculate_invoice_tax(line_taxes, self.places)

            uow.advance(PostingState.PERSISTING)
            ret = Transaction(
                reference_number=next_document_number(uow, kind=kind),
                kind=kind,
                status=STATUS_CONFIRMED,
                counterparty_id=original.counterparty_id,
                transaction_date=request.transaction_date or today(),
                original_transaction_id=original.id,
                is_tax_inclusive=original.is_tax_inclusive,
                return_reason=request.reason,
                notes=request.notes,
                confirmed_at=utcnow(),
            )
            self._apply_totals(ret, invoice_tax, -1)
            lines = [
                self._line_row(
                    number,
                    line_tax,
                    item_id=line.item_id,
                    warehouse_id=line.warehouse_id,
                    tax_codes=line.tax_code_list,
                    sign=-1,
                    original_line_id=line.id,
                )
                for number, ((line, qty), line_tax) in enumerate(zip(allocations, line_taxes), start=1)
            ]
            tax_totals = self._tax_totals(kind, invoice_tax, -1)
            self.transactions.add(ret, lines, tax_totals)

            # serializes concurrent returns of the same original on its version_id
            original.return_count = (original.return_count or 0) + 1

            self._post_side_effects(uow, ret, lines, tax_totals, original)

            uow.invalidate(
                transaction_key(ret.id),
                transaction_key(original.id),
                returnable_key(original.id),
                TRANSACTIONS_LIST_KEY,
            )
            ret_id = ret.id
            uow.commit()
            logger.info("%s %s posted against %s (id=%s)", kind, ret.reference_number,
                        original.reference_number, ret_id)
            return ret_id

        ret_id = self._run(_op, label=f"return against transaction {original_id}", cancel_event=cancel_event)
        return self.get_transaction(ret_id)

    # -------------------------------------------------------------------------
    # Stand-alone stock and ledger operations
    # -------------------------------------------------------------------------

    def adjust_stock(self, item_id: int, quantity, direction: str, reason: str | None = None,
                     warehouse_id: int | None = None) -> dict:
        def _op(uow):
            uow.advance(PostingState.ADJUSTING_STOCK)
            movement = self.stock.adjust(uow, item_id, quantity, direction, reason=reason,
                                         warehouse_id=warehouse_id, reference_type="adjustment")
            uow.commit()
            return {
                "movement": movement.to_dict(),
                "on_hand": str(self.stock.on_hand(item_id, warehouse_id)),
            }

        return self._run(_op, label=f"stock adjustment for item {item_id}")

    def transfer_stock(self, item_id: int, from_warehouse_id, to_warehouse_id, quantity,
                       reason: str | None = None) -> dict:
        def _op(uow):
            uow.advance(PostingState.ADJUSTING_STOCK)
            outbound, inbound = self.stock.transfer(uow, item_id, from_warehouse_id, to_warehouse_id,
                                                    quantity, reason=reason)
            uow.commit()
            return {
                "movements": [outbound.to_dict(), inbound.to_dict()],
                "from_on_hand": str(self.stock.on_hand(item_id, from_warehouse_id)),
                "to_on_hand": str(self.stock.on_hand(item_id, to_warehouse_id)),
            }

        return self._run(_op, label=f"stock transfer for item {item_id}")

    def reverse_ledger(self, reference_type: str, reference_id, reason: str, entry_date=None) -> dict:
        def _op(uow):
            uow.advance(PostingState.POSTING_LEDGER)
            batch_id, rows = self.ledger.reverse_batch(uow, reference_type, reference_id, reason, entry_date)
            payload = {"batch_id": batch_id, "entries": [row.to_dict() for row in rows]}
            uow.commit()
            return payload

        return self._run(_op, label=f"ledger reversal of {reference_type}:{reference_id}")

    def ledger_for_reference(self, reference_type: str, reference_id) -> dict:
        entries = self.ledger.entries_for_reference(reference_type, reference_id)
        if not entries:
            raise NotFoundError("ledger entries", f"{reference_type}:{reference_id}")
        debit = sum((Decimal(e.debit) for e in entries), ZERO)
        credit = sum((Decimal(e.credit) for e in entries), ZERO)
        return {
            "reference_type": reference_type,
            "reference_id": str(reference_id),
            "entries": [e.to_dict() for e in entries],
            "total_debit": str(quantize_money(debit, self.places)),
            "total_credit": str(quantize_money(credit, self.places)),
        }
