"""
Unit of work state machine, optimistic-lock retries and concurrent returns.

The threaded tests use a file-backed SQLite database so that every thread
gets its own connection, the same way the API server would.
"""

import logging
import os
import tempfile
import threading
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from backoffice import create_app
from backoffice.errors import (
    ConcurrencyConflictError,
    PersistenceError,
    ReturnValidationError,
)
from backoffice.extensions import db
from backoffice.models import Item, Transaction
from backoffice.seed import seed_accounts, seed_tax_codes
from backoffice.services import get_services
from backoffice.services.cache_service import CacheInvalidationSink, RecordingCacheSink
from backoffice.services.concurrency import run_with_retry
from backoffice.services.unit_of_work import PostingState, UnitOfWork, run_in_unit_of_work
from conftest import sale_payload, stock_up


# =============================================================================
# RETRY
# =============================================================================

def test_retry_recovers_from_stale_data(db_session):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StaleDataError("version mismatch")
        return "ok"

    assert run_with_retry(flaky, attempts=3, backoff_base=0) == "ok"
    assert len(calls) == 3


def test_retry_gives_up_with_conflict_error(db_session):
    def always_stale():
        raise StaleDataError("version mismatch")

    with pytest.raises(ConcurrencyConflictError) as exc_info:
        run_with_retry(always_stale, attempts=2, backoff_base=0, label="test op")

    assert exc_info.value.retryable is True
    assert exc_info.value.http_status == 409
    assert isinstance(exc_info.value.__cause__, StaleDataError)


def test_retry_does_not_catch_other_errors(db_session):
    calls = []

    def broken():
        calls.append(1)
        raise ValueError("bug")

    with pytest.raises(ValueError):
        run_with_retry(broken, attempts=3, backoff_base=0)
    assert len(calls) == 1


# =============================================================================
# UNIT OF WORK
# =============================================================================

def test_unit_of_work_moves_forward_only(db_session):
    with UnitOfWork(label="test") as uow:
        uow.advance(PostingState.COMPUTING)
        uow.advance(PostingState.ADJUSTING_STOCK)

        with pytest.raises(PersistenceError):
            uow.advance(PostingState.PERSISTING)
        with pytest.raises(PersistenceError):
            uow.advance(PostingState.COMMITTED)

        uow.commit()

    assert uow.state is PostingState.COMMITTED
    assert uow.history == [
        PostingState.VALIDATING,
        PostingState.COMPUTING,
        PostingState.ADJUSTING_STOCK,
        PostingState.COMMITTED,
    ]
    with pytest.raises(PersistenceError):
        uow.advance(PostingState.POSTING_LEDGER)


def test_unit_of_work_fails_when_left_uncommitted(db_session):
    sink = RecordingCacheSink()

    with pytest.raises(RuntimeError):
        with UnitOfWork(cache_sink=sink, label="test") as uow:
            uow.invalidate("stock:1")
            raise RuntimeError("boom")

    assert uow.state is PostingState.FAILED
    assert not uow.is_active
    assert sink.batches == []


def test_keys_are_emitted_once_after_commit(db_session):
    sink = RecordingCacheSink()

    with UnitOfWork(cache_sink=sink, label="test") as uow:
        uow.invalidate("stock:1", ["ledger:1100", "stock:1"])
        assert sink.batches == []
        uow.commit()

    assert sink.batches == [["ledger:1100", "stock:1"]]


def test_cache_sink_failure_does_not_undo_commit(db_session, caplog):
    class BrokenSink(CacheInvalidationSink):
        def invalidate(self, keys):
            raise RuntimeError("cache down")

    with caplog.at_level(logging.ERROR, logger="backoffice.services.unit_of_work"):
        with UnitOfWork(cache_sink=BrokenSink(), label="test") as uow:
            uow.invalidate("stock:1")
            uow.commit()

    assert uow.state is PostingState.COMMITTED
    assert "cache invalidation failed" in caplog.text


def test_database_errors_surface_as_persistence_error(db_session):
    def op(uow):
        raise IntegrityError("INSERT ...", {}, Exception("constraint"))

    with pytest.raises(PersistenceError) as exc_info:
        run_in_unit_of_work(op, label="test", attempts=1, backoff_base=0)

    assert exc_info.value.details["cause"] == "IntegrityError"


# =============================================================================
# OPTIMISTIC LOCKING ON THE ORIGINAL TRANSACTION
# =============================================================================

def _bump_version_behind_the_session(transaction_id):
    db.session.execute(
        text("UPDATE transactions SET version_id = version_id + 1 WHERE id = :id"),
        {"id": transaction_id},
    )


def test_return_retries_after_concurrent_update(services, item, monkeypatch, caplog):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))

    validator = services.posting.return_validator
    original_validate = validator.validate
    calls = []

    def validate_then_collide(original_id, items, **kwargs):
        calls.append(1)
        result = original_validate(original_id, items, **kwargs)
        if len(calls) == 1:
            _bump_version_behind_the_session(original_id)
        return result

    monkeypatch.setattr(validator, "validate", validate_then_collide)

    with caplog.at_level(logging.WARNING, logger="backoffice.services.concurrency"):
        ret = services.posting.create_return({"items": [{"item_id": item.id, "quantity": 2}]}, sale["id"])

    assert len(calls) == 2
    assert "conflict" in caplog.text
    assert ret["totals"]["grand_total"] == "-236.00"
    assert db.session.get(Transaction, sale["id"]).return_count == 1


def test_return_gives_up_after_repeated_conflicts(services, item, db_session, monkeypatch):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))

    validator = services.posting.return_validator
    original_validate = validator.validate

    def validate_then_collide(original_id, items, **kwargs):
        result = original_validate(original_id, items, **kwargs)
        _bump_version_behind_the_session(original_id)
        return result

    monkeypatch.setattr(validator, "validate", validate_then_collide)

    with pytest.raises(ConcurrencyConflictError):
        services.posting.create_return({"items": [{"item_id": item.id, "quantity": 2}]}, sale["id"])

    assert db_session.query(Transaction).count() == 1
    assert services.stock.on_hand(item.id) == Decimal("0")


# =============================================================================
# THREADS (file-backed database)
# =============================================================================

@pytest.fixture
def file_app():
    with tempfile.TemporaryDirectory() as tmpdir:
        app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///' + os.path.join(tmpdir, 'concurrency.db'),
            'POSTING_RETRY_ATTEMPTS': 8,
            'POSTING_RETRY_BACKOFF': 0.02,
        })
        with app.app_context():
            db.create_all()
            seed_accounts(app.config['LEDGER_ACCOUNTS'])
            seed_tax_codes()
            item = Item(code="ITEM-T", name="Threaded Widget", pack_size=1, default_tax_codes="GST18")
            db.session.add(item)
            db.session.commit()
            app.config['TEST_ITEM_ID'] = item.id

        yield app

        with app.app_context():
            db.session.remove()
            db.engine.dispose()


def _run_threads(app, worker, count):
    results = []
    lock = threading.Lock()
    start = threading.Barrier(count)

    def thread_main(index):
        with app.app_context():
            try:
                start.wait()
                outcome = ("ok", worker(index))
            except Exception as e:
                outcome = ("error", e)
            finally:
                db.session.remove()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=thread_main, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_concurrent_returns_never_exceed_original(file_app):
    item_id = file_app.config['TEST_ITEM_ID']
    with file_app.app_context():
        services = get_services(file_app)
        stock_up(services, item_id, 10)
        sale = services.posting.create_invoice(sale_payload(item_id))

    def return_six(_index):
        return get_services().posting.create_return(
            {"items": [{"item_id": item_id, "quantity": 6}]}, sale["id"]
        )

    results = _run_threads(file_app, return_six, 2)

    successes = [r for status, r in results if status == "ok"]
    failures = [r for status, r in results if status == "error"]
    assert len(successes) == 1
    assert all(isinstance(e, (ReturnValidationError, ConcurrencyConflictError)) for e in failures)

    with file_app.app_context():
        services = get_services(file_app)
        returned = services.transactions.returned_quantities(sale["id"])
        assert returned[item_id] == Decimal("6")
        assert services.stock.on_hand(item_id) == Decimal("6")
        assert services.stock.audit() == []
        assert services.ledger.unbalanced_batches() == []


def test_concurrent_sales_get_unique_gap_free_numbers(file_app):
    item_id = file_app.config['TEST_ITEM_ID']
    with file_app.app_context():
        stock_up(get_services(file_app), item_id, 100)

    def sell_one(_index):
        return get_services().posting.create_invoice(sale_payload(item_id, quantity=1))

    results = _run_threads(file_app, sell_one, 4)

    numbers = sorted(r["reference_number"] for status, r in results if status == "ok")
    assert numbers
    assert numbers == [f"SI-{n:06d}" for n in range(1, len(numbers) + 1)]

    with file_app.app_context():
        services = get_services(file_app)
        assert services.stock.on_hand(item_id) == Decimal(100 - len(numbers))
        assert services.stock.audit() == []
