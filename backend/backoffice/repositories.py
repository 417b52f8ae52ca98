# Overview: SQLAlchemy-backed lookups the posting services read through.

"""
Repositories

Services never query models directly for cross-entity reads; they go through
these objects so every read the posting engine depends on is explicit and can
be replaced in tests.

    TransactionRepository   transactions, their lines, return history
    ItemLookup              item / warehouse existence, active flag, packaging
    TaxRateLookup           tax code in effect on a date
    AccountLookup           chart of accounts
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from sqlalchemy import and_, or_

from .errors import NotFoundError, UnknownTaxCode, ValidationError
from .extensions import db
from .models import (
    Account,
    Item,
    TaxCode,
    Transaction,
    TransactionLine,
    TransactionTaxTotal,
    Warehouse,
)
from .models.transactions import STATUS_CANCELLED
from .services.concurrency import lock_for_update


class TransactionRepository:

    def get(self, transaction_id: int) -> Transaction | None:
        return db.session.get(Transaction, transaction_id)

    def require(self, transaction_id: int, *, for_update: bool = False) -> Transaction:
        query = db.session.query(Transaction).filter(Transaction.id == transaction_id)
        if for_update:
            query = lock_for_update(query)
        txn = query.first()
        if txn is None:
            raise NotFoundError("transaction", transaction_id)
        return txn

    def lines_for(self, transaction_id: int) -> list[TransactionLine]:
        return (
            db.session.query(TransactionLine)
            .filter(TransactionLine.transaction_id == transaction_id)
            .order_by(TransactionLine.line_number.asc())
            .all()
        )

    def tax_totals_for(self, transaction_id: int) -> list[TransactionTaxTotal]:
        return (
            db.session.query(TransactionTaxTotal)
            .filter(TransactionTaxTotal.transaction_id == transaction_id)
            .order_by(TransactionTaxTotal.tax_code.asc())
            .all()
        )

    def returns_for(self, original_id: int, *, include_cancelled: bool = False) -> list[Transaction]:
        query = db.session.query(Transaction).filter(Transaction.original_transaction_id == original_id)
        if not include_cancelled:
            query = query.filter(Transaction.status != STATUS_CANCELLED)
        return query.order_by(Transaction.id.asc()).all()

    def returned_quantities(self, original_id: int) -> dict[int, Decimal]:
        """
        Absolute quantity already returned per item across every
        non-cancelled return referencing the original.
        """
        rows = (
            db.session.query(TransactionLine.item_id, TransactionLine.quantity)
            .join(Transaction, Transaction.id == TransactionLine.transaction_id)
            .filter(
                Transaction.original_transaction_id == original_id,
                Transaction.status != STATUS_CANCELLED,
            )
            .all()
        )
        totals: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
        for item_id, quantity in rows:
            totals[item_id] += abs(Decimal(quantity))
        return dict(totals)

    def returned_by_line(self, original_id: int) -> dict[int, Decimal]:
        """Absolute quantity already returned per original line id."""
        rows = (
            db.session.query(TransactionLine.original_line_id, TransactionLine.quantity)
            .join(Transaction, Transaction.id == TransactionLine.transaction_id)
            .filter(
                Transaction.original_transaction_id == original_id,
                Transaction.status != STATUS_CANCELLED,
                TransactionLine.original_line_id.isnot(None),
            )
            .all()
        )
        totals: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
        for line_id, quantity in rows:
            totals[line_id] += abs(Decimal(quantity))
        return dict(totals)

    def add(self, txn: Transaction, lines: list[TransactionLine], tax_totals: list[TransactionTaxTotal]) -> Transaction:
        db.session.add(txn)
        db.session.flush()
        for line in lines:
            line.transaction_id = txn.id
            db.session.add(line)
        for total in tax_totals:
            total.transaction_id = txn.id
            db.session.add(total)
        db.session.flush()
        return txn


class ItemLookup:

    def get_item(self, item_id: int) -> Item | None:
        return db.session.get(Item, item_id)

    def require_active_item(self, item_id: int) -> Item:
        item = self.get_item(item_id)
        if item is None:
            raise NotFoundError("item", item_id)
        if not item.is_active:
            raise ValidationError(f"Item {item_id} is inactive", field="item_id", item_id=item_id)
        return item

    def get_warehouse(self, warehouse_id: int) -> Warehouse | None:
        return db.session.get(Warehouse, warehouse_id)

    def require_active_warehouse(self, warehouse_id: int | None) -> Warehouse | None:
        if warehouse_id is None:
            return None
        warehouse = self.get_warehouse(warehouse_id)
        if warehouse is None:
            raise NotFoundError("warehouse", warehouse_id)
        if not warehouse.is_active:
            raise ValidationError(
                f"Warehouse {warehouse_id} is inactive",
                field="warehouse_id",
                warehouse_id=warehouse_id,
            )
        return warehouse


class TaxRateLookup:

    def rate_for(self, code: str, on_date) -> TaxCode:
        """
        Active tax code row in effect on `on_date` (inclusive window).
        When windows overlap the most recent effective_from wins.
        """
        normalized = (code or "").strip().upper()
        tax = (
            db.session.query(TaxCode)
            .filter(
                TaxCode.code == normalized,
                TaxCode.is_active.is_(True),
                TaxCode.effective_from <= on_date,
                or_(TaxCode.effective_to.is_(None), TaxCode.effective_to >= on_date),
            )
            .order_by(TaxCode.effective_from.desc())
            .first()
        )
        if tax is None:
            raise UnknownTaxCode(normalized or code, on_date)
        return tax

    def codes_in_effect(self, on_date) -> list[TaxCode]:
        return (
            db.session.query(TaxCode)
            .filter(
                and_(
                    TaxCode.is_active.is_(True),
                    TaxCode.effective_from <= on_date,
                    or_(TaxCode.effective_to.is_(None), TaxCode.effective_to >= on_date),
                )
            )
            .order_by(TaxCode.code.asc())
            .all()
        )


class AccountLookup:

    def get(self, code: str) -> Account | None:
        return db.session.query(Account).filter(Account.code == code).first()

    def require_active(self, code: str) -> Account:
        account = self.get(code)
        if account is None:
            raise NotFoundError("account", code)
        if not account.is_active:
            raise ValidationError(f"Account {code} is inactive", field="account_code", account_code=code)
        return account
