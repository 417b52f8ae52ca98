from .master import Item, Warehouse, TaxCode, Account
from .transactions import Transaction, TransactionLine, TransactionTaxTotal, DocumentSequence
from .inventory import StockBalance, StockMovement
from .ledger import LedgerEntry
from .immutability import register_immutability_listeners

register_immutability_listeners()

__all__ = [
    'Item', 'Warehouse', 'TaxCode', 'Account',
    'Transaction', 'TransactionLine', 'TransactionTaxTotal', 'DocumentSequence',
    'StockBalance', 'StockMovement',
    'LedgerEntry',
]
