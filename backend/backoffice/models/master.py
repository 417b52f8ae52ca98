from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z


class Item(db.Model):
    """
    Item master data (read-only to the posting engine).

    PACKAGING: units are packed into boxes (pack_size units per box) and boxes
    into cartons (boxes_per_carton). Stock is always kept in units.

    TAXES: default_tax_codes is a comma-separated list applied to invoice lines
    that do not name their own tax codes.
    """
    __tablename__ = "items"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_items_code"),
        db.Index("ix_items_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    pack_size = db.Column(db.Integer, nullable=False, default=1)
    boxes_per_carton = db.Column(db.Integer, nullable=True)

    default_tax_codes = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def default_tax_code_list(self) -> list[str]:
        if not self.default_tax_codes:
            return []
        return [c.strip().upper() for c in self.default_tax_codes.split(",") if c.strip()]

    def __repr__(self) -> str:
        return f"<Item id={self.id} code={self.code!r} pack_size={self.pack_size}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "pack_size": self.pack_size,
            "boxes_per_carton": self.boxes_per_carton,
            "default_tax_codes": self.default_tax_code_list,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_warehouses_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "is_active": self.is_active,
        }


class TaxCode(db.Model):
    """
    Tax rate configuration (GST, WHT, ...).

    rate is a fraction: 0.18 means 18%. Rates above 1.0 are rejected unless
    allow_rate_above_one is set.

    is_compound: the code applies to (taxable amount + non-compound taxes)
    instead of the plain taxable amount.

    Effective window is inclusive on both ends; effective_to NULL means open.
    """
    __tablename__ = "tax_codes"
    __table_args__ = (
        db.UniqueConstraint("code", "effective_from", name="uq_tax_codes_code_from"),
        db.Index("ix_tax_codes_code_active", "code", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    tax_type = db.Column(db.String(16), nullable=False, default="GST")  # GST, WHT, SALES_TAX, CUSTOM

    rate = db.Column(db.Numeric(9, 6), nullable=False)
    is_compound = db.Column(db.Boolean, nullable=False, default=False)
    allow_rate_above_one = db.Column(db.Boolean, nullable=False, default=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.Date, nullable=False)
    effective_to = db.Column(db.Date, nullable=True)

    # Ledger accounts: output tax on sales, input tax on purchases
    output_account_code = db.Column(db.String(32), db.ForeignKey("accounts.code"), nullable=False)
    input_account_code = db.Column(db.String(32), db.ForeignKey("accounts.code"), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "tax_type": self.tax_type,
            "rate": str(self.rate),
            "is_compound": self.is_compound,
            "allow_rate_above_one": self.allow_rate_above_one,
            "is_active": self.is_active,
            "effective_from": to_iso_date(self.effective_from),
            "effective_to": to_iso_date(self.effective_to),
            "output_account_code": self.output_account_code,
            "input_account_code": self.input_account_code,
        }


class Account(db.Model):
    """Chart of accounts row. Ledger entries reference accounts by code."""
    __tablename__ = "accounts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    account_type = db.Column(db.String(16), nullable=False)  # asset, liability, equity, revenue, expense
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "account_type": self.account_type,
            "is_active": self.is_active,
        }
