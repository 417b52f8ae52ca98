"""
Reference data: chart of accounts and default tax codes.

Idempotent: rows that already exist (by code) are left as they are.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from .extensions import db
from .models import Account, TaxCode


# code, name, account_type
TAX_ACCOUNTS = [
    ("1300", "GST Input Tax", "asset"),
    ("1310", "Withholding Tax Receivable", "asset"),
    ("2200", "GST Output Tax", "liability"),
    ("2210", "Withholding Tax Payable", "liability"),
    ("2220", "Further Tax Payable", "liability"),
]

ROLE_ACCOUNTS = {
    "accounts_receivable": ("Accounts Receivable", "asset"),
    "accounts_payable": ("Accounts Payable", "liability"),
    "sales_revenue": ("Sales Revenue", "revenue"),
    "sales_discount": ("Sales Discounts", "expense"),
    "purchases": ("Purchases", "expense"),
    "purchase_discount": ("Purchase Discounts", "revenue"),
}

# code, name, tax_type, rate, is_compound, output account, input account
DEFAULT_TAX_CODES = [
    ("GST18", "General Sales Tax 18%", "GST", Decimal("0.18"), False, "2200", "1300"),
    ("GST17", "General Sales Tax 17%", "GST", Decimal("0.17"), False, "2200", "1300"),
    ("WHT4", "Withholding Tax 4%", "WHT", Decimal("0.04"), False, "2210", "1310"),
    ("FT3", "Further Tax 3% (on tax-inclusive value)", "SALES_TAX", Decimal("0.03"), True, "2220", "1300"),
    ("ZERO", "Zero Rated", "GST", Decimal("0"), False, "2200", "1300"),
]


def seed_accounts(ledger_accounts: dict) -> int:
    """Create posting-role accounts from config plus the tax accounts."""
    wanted = []
    for role, code in ledger_accounts.items():
        name, account_type = ROLE_ACCOUNTS.get(role, (role.replace("_", " ").title(), "asset"))
        wanted.append((code, name, account_type))
    wanted.extend(TAX_ACCOUNTS)

    created = 0
    for code, name, account_type in wanted:
        if db.session.query(Account).filter_by(code=code).first():
            continue
        db.session.add(Account(code=code, name=name, account_type=account_type, is_active=True))
        created += 1
    db.session.commit()
    return created


def seed_tax_codes(effective_from: date = date(2000, 1, 1)) -> int:
    created = 0
    for code, name, tax_type, rate, is_compound, output_account, input_account in DEFAULT_TAX_CODES:
        if db.session.query(TaxCode).filter_by(code=code).first():
            continue
        db.session.add(TaxCode(
            code=code,
            name=name,
            tax_type=tax_type,
            rate=rate,
            is_compound=is_compound,
            is_active=True,
            effective_from=effective_from,
            output_account_code=output_account,
            input_account_code=input_account,
        ))
        created += 1
    db.session.commit()
    return created
