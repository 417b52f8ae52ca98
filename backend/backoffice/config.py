# backend/backoffice/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # "clamp": decreases stop at zero and record the applied delta
    # "reject": decreases below zero raise InsufficientStockError
    STOCK_NEGATIVE_POLICY = os.environ.get("STOCK_NEGATIVE_POLICY", "clamp")

    POSTING_RETRY_ATTEMPTS = int(os.environ.get("POSTING_RETRY_ATTEMPTS", "3"))
    POSTING_RETRY_BACKOFF = float(os.environ.get("POSTING_RETRY_BACKOFF", "0.05"))

    DEFAULT_BOXES_PER_CARTON = int(os.environ.get("DEFAULT_BOXES_PER_CARTON", "12"))

    # Presentation precision for money amounts
    MONEY_PLACES = int(os.environ.get("MONEY_PLACES", "2"))

    # Posting roles -> chart of accounts codes
    LEDGER_ACCOUNTS = {
        "accounts_receivable": "1100",
        "accounts_payable": "2000",
        "sales_revenue": "4000",
        "sales_discount": "4100",
        "purchases": "5000",
        "purchase_discount": "5100",
    }
