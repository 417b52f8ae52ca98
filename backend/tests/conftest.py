"""
Pytest fixtures for back-office ledger tests.

Provides an in-memory database, per-test table cleanup, seeded chart of
accounts / tax codes / items / warehouses, a recording cache sink and the
Flask test client.
"""

from decimal import Decimal

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Item, Warehouse
from backoffice.seed import seed_accounts, seed_tax_codes
from backoffice.services import build_services, get_services
from backoffice.services.cache_service import RecordingCacheSink
from backoffice.services.unit_of_work import UnitOfWork


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'POSTING_RETRY_BACKOFF': 0,
        'LOG_LEVEL': 'DEBUG',
    })
    build_services(app, cache_sink=RecordingCacheSink())

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (bulk deletes skip the append-only guards)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def services(app, db_session):
    return get_services(app)


@pytest.fixture(scope='function')
def cache_sink(services):
    services.cache_sink.clear()
    return services.cache_sink


@pytest.fixture(scope='function')
def ledger_setup(app, db_session):
    """Chart of accounts and default tax codes."""
    seed_accounts(app.config['LEDGER_ACCOUNTS'])
    seed_tax_codes()


@pytest.fixture(scope='function')
def warehouse(db_session):
    wh = Warehouse(code="MAIN", name="Main Warehouse", is_active=True)
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def branch_warehouse(db_session):
    wh = Warehouse(code="BR1", name="Branch Warehouse", is_active=True)
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def item(db_session, ledger_setup):
    """Taxed item: 12 units per box, GST18 by default."""
    it = Item(code="ITEM-001", name="Widget", pack_size=12, boxes_per_carton=10, default_tax_codes="GST18")
    db_session.add(it)
    db_session.commit()
    return it


@pytest.fixture(scope='function')
def untaxed_item(db_session, ledger_setup):
    it = Item(code="ITEM-002", name="Gadget", pack_size=1)
    db_session.add(it)
    db_session.commit()
    return it


@pytest.fixture(scope='function')
def uow(db_session, cache_sink):
    """A unit of work for calling component methods directly."""
    with UnitOfWork(cache_sink=cache_sink, label="test") as unit:
        yield unit


def stock_up(services, item_id, quantity, warehouse_id=None):
    """Put stock on hand through a committed adjustment."""
    return services.posting.adjust_stock(item_id, quantity, "increase", reason="Opening stock",
                                         warehouse_id=warehouse_id)


def sale_payload(item_id, quantity=10, unit_price="100", **line_overrides):
    line = {"item_id": item_id, "quantity": quantity, "unit_price": unit_price}
    line.update(line_overrides)
    return {"kind": "sale", "counterparty_id": "CUST-1", "lines": [line]}


def ledger_by_account(entries):
    """{account_code: (debit, credit)} summed per account."""
    totals = {}
    for entry in entries:
        code = entry.account_code if hasattr(entry, "account_code") else entry["account_code"]
        debit = Decimal(str(entry.debit if hasattr(entry, "debit") else entry["debit"]))
        credit = Decimal(str(entry.credit if hasattr(entry, "credit") else entry["credit"]))
        d, c = totals.get(code, (Decimal("0"), Decimal("0")))
        totals[code] = (d + debit, c + credit)
    return totals
