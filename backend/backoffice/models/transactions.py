from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z


KIND_SALE = "sale"
KIND_PURCHASE = "purchase"
KIND_RETURN_OF_SALE = "return_of_sale"
KIND_RETURN_OF_PURCHASE = "return_of_purchase"

TRANSACTION_KINDS = (KIND_SALE, KIND_PURCHASE, KIND_RETURN_OF_SALE, KIND_RETURN_OF_PURCHASE)
RETURN_KINDS = (KIND_RETURN_OF_SALE, KIND_RETURN_OF_PURCHASE)

# return kind -> kind of the transaction it reverses
RETURN_OF = {
    KIND_RETURN_OF_SALE: KIND_SALE,
    KIND_RETURN_OF_PURCHASE: KIND_PURCHASE,
}
RETURN_KIND_FOR = {original: ret for ret, original in RETURN_OF.items()}

STATUS_DRAFT = "draft"
STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"

TRANSACTION_STATUSES = (STATUS_DRAFT, STATUS_CONFIRMED, STATUS_CANCELLED)


def _money(value):
    return str(value) if value is not None else None


class Transaction(db.Model):
    """
    Invoice or return document.

    LIFECYCLE:
    1. draft: totals computed, no stock or ledger effect
    2. confirmed: stock movements and ledger batch exist for it
    3. cancelled: excluded from return history; never reached by deleting
       posted rows, only by a compensating transaction

    RETURNS:
    - original_transaction_id points at the sale/purchase being reversed
    - line quantities are stored negative
    - return_count on the ORIGINAL is bumped by every posted return so that
      two concurrent returns against one original collide on version_id
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("reference_number", name="uq_transactions_reference_number"),
        db.Index("ix_transactions_original_status", "original_transaction_id", "status"),
        db.Index("ix_transactions_kind_date", "kind", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable reference (e.g., "SI-000012")
    reference_number = db.Column(db.String(32), nullable=False)

    kind = db.Column(db.String(24), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_DRAFT, index=True)

    counterparty_id = db.Column(db.String(64), nullable=True, index=True)
    transaction_date = db.Column(db.Date, nullable=False)

    original_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)

    is_tax_inclusive = db.Column(db.Boolean, nullable=False, default=False)

    return_reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Totals (rounded to cents once, from exact sums)
    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_discount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    taxable_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_tax = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    grand_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    return_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_return(self) -> bool:
        return self.kind in RETURN_KINDS

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} ref={self.reference_number!r} kind={self.kind} status={self.status}>"

    def to_dict(self, lines=None, tax_totals=None) -> dict:
        payload = {
            "id": self.id,
            "reference_number": self.reference_number,
            "kind": self.kind,
            "status": self.status,
            "counterparty_id": self.counterparty_id,
            "date": to_iso_date(self.transaction_date),
            "original_transaction_id": self.original_transaction_id,
            "is_tax_inclusive": self.is_tax_inclusive,
            "return_reason": self.return_reason,
            "notes": self.notes,
            "totals": {
                "subtotal": _money(self.subtotal),
                "total_discount": _money(self.total_discount),
                "taxable_amount": _money(self.taxable_amount),
                "total_tax": _money(self.total_tax),
                "grand_total": _money(self.grand_total),
            },
            "created_at": to_utc_z(self.created_at),
            "confirmed_at": to_utc_z(self.confirmed_at) if self.confirmed_at else None,
            "version_id": self.version_id,
        }
        if lines is not None:
            payload["lines"] = [line.to_dict() for line in lines]
        if tax_totals is not None:
            payload["totals"]["taxes"] = {t.tax_code: _money(t.tax_amount) for t in tax_totals}
        return payload


class TransactionLine(db.Model):
    """
    Line item on a transaction.

    quantity and the computed amounts are signed (negative on returns).
    unit_price and discount are always the positive values the line was
    priced with; on a return they are copied from the original line, with an
    amount discount prorated to the returned quantity.
    """
    __tablename__ = "transaction_lines"
    __table_args__ = (
        db.Index("ix_transaction_lines_txn_item", "transaction_id", "item_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)

    # Return lines point at the original line they reverse
    original_line_id = db.Column(db.Integer, db.ForeignKey("transaction_lines.id"), nullable=True, index=True)

    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 4), nullable=False)

    discount = db.Column(db.Numeric(14, 4), nullable=False, default=0)
    discount_type = db.Column(db.String(8), nullable=False, default="percent")  # percent, amount

    # Comma-separated tax codes applied to this line
    tax_codes = db.Column(db.String(255), nullable=True)

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    taxable_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    @property
    def tax_code_list(self) -> list[str]:
        if not self.tax_codes:
            return []
        return [c for c in self.tax_codes.split(",") if c]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "line_number": self.line_number,
            "item_id": self.item_id,
            "warehouse_id": self.warehouse_id,
            "original_line_id": self.original_line_id,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "discount": str(self.discount),
            "discount_type": self.discount_type,
            "tax_codes": self.tax_code_list,
            "subtotal": _money(self.subtotal),
            "discount_amount": _money(self.discount_amount),
            "taxable_amount": _money(self.taxable_amount),
            "tax_amount": _money(self.tax_amount),
            "line_total": _money(self.line_total),
        }


class TransactionTaxTotal(db.Model):
    """Per-tax-code subtotal of a transaction (signed like the transaction)."""
    __tablename__ = "transaction_tax_totals"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "tax_code", name="uq_txn_tax_totals_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    tax_code = db.Column(db.String(20), nullable=False)
    rate = db.Column(db.Numeric(9, 6), nullable=False)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False)
    # output account on sales, input account on purchases
    account_code = db.Column(db.String(32), db.ForeignKey("accounts.code"), nullable=False)

    def to_dict(self) -> dict:
        return {
            "tax_code": self.tax_code,
            "rate": str(self.rate),
            "tax_amount": _money(self.tax_amount),
            "account_code": self.account_code,
        }


class DocumentSequence(db.Model):
    """Next reference number per document type (SI, PI, SR, PR)."""
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_document_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
