"""
Service wiring.

Components are plain classes with explicit collaborators. build_services()
constructs one set per app from its config and stores it on
app.extensions["backoffice"]; routes and CLI commands reach it through
get_services().
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app


EXTENSION_KEY = "backoffice"


@dataclass
class Services:
    transactions: object
    items: object
    tax_rates: object
    accounts: object
    tax_engine: object
    return_validator: object
    stock: object
    ledger: object
    cache_sink: object
    posting: object


def build_services(app, *, cache_sink=None) -> Services:
    from ..repositories import AccountLookup, ItemLookup, TaxRateLookup, TransactionRepository
    from .cache_service import LoggingCacheSink
    from .ledger_service import LedgerPoster
    from .posting_service import InvoicePostingOrchestrator
    from .return_service import ReturnValidator
    from .stock_service import StockMovementRecorder
    from .tax_service import TaxEngine

    config = app.config
    places = int(config.get("MONEY_PLACES", 2))

    transactions = TransactionRepository()
    items = ItemLookup()
    tax_rates = TaxRateLookup()
    accounts = AccountLookup()
    sink = cache_sink or LoggingCacheSink()

    tax_engine = TaxEngine(tax_rates, places=places)
    return_validator = ReturnValidator(transactions)
    stock = StockMovementRecorder(items, negative_policy=config.get("STOCK_NEGATIVE_POLICY", "clamp"))
    ledger = LedgerPoster(accounts, config["LEDGER_ACCOUNTS"], places=places)
    posting = InvoicePostingOrchestrator(
        transactions=transactions,
        items=items,
        tax_engine=tax_engine,
        return_validator=return_validator,
        stock=stock,
        ledger=ledger,
        cache_sink=sink,
        retry_attempts=int(config.get("POSTING_RETRY_ATTEMPTS", 3)),
        retry_backoff=float(config.get("POSTING_RETRY_BACKOFF", 0.05)),
    )

    services = Services(
        transactions=transactions,
        items=items,
        tax_rates=tax_rates,
        accounts=accounts,
        tax_engine=tax_engine,
        return_validator=return_validator,
        stock=stock,
        ledger=ledger,
        cache_sink=sink,
        posting=posting,
    )
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services(app=None) -> Services:
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
