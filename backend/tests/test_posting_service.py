"""
End-to-end postings through the orchestrator: invoices, drafts, partial
returns, rollback on failure and cache invalidation.
"""

import threading
from decimal import Decimal

import pytest

from backoffice.errors import (
    InsufficientStockError,
    NotFoundError,
    PostingCancelledError,
    ReturnValidationError,
    UnknownTaxCode,
    ValidationError,
)
from backoffice.models import (
    Account,
    DocumentSequence,
    LedgerEntry,
    StockMovement,
    Transaction,
)
from backoffice.services.stock_service import StockMovementRecorder
from conftest import ledger_by_account, sale_payload, stock_up


D = Decimal


def _ledger(services, txn):
    return ledger_by_account(services.ledger.entries_for_reference(txn["kind"], txn["id"]))


def _return(services, original, item_id, quantity, **extra):
    payload = {"items": [{"item_id": item_id, "quantity": quantity}]}
    payload.update(extra)
    return services.posting.create_return(payload, original["id"])


def _counts(db_session):
    return (
        db_session.query(Transaction).count(),
        db_session.query(StockMovement).count(),
        db_session.query(LedgerEntry).count(),
    )


# =============================================================================
# SALES AND PURCHASES
# =============================================================================

def test_sale_moves_stock_and_posts_balanced_ledger(services, item):
    stock_up(services, item.id, 20)

    sale = services.posting.create_invoice(sale_payload(item.id))

    assert sale["reference_number"] == "SI-000001"
    assert sale["status"] == "confirmed"
    assert sale["totals"]["subtotal"] == "1000.00"
    assert sale["totals"]["total_tax"] == "180.00"
    assert sale["totals"]["grand_total"] == "1180.00"
    assert sale["totals"]["taxes"] == {"GST18": "180.00"}
    assert sale["lines"][0]["tax_codes"] == ["GST18"]
    assert sale["return_ids"] == []
    assert services.stock.on_hand(item.id) == D("10")

    assert _ledger(services, sale) == {
        "1100": (D("1180.00"), D("0")),
        "4000": (D("0"), D("1000.00")),
        "2200": (D("0"), D("180.00")),
    }


def test_reference_numbers_increase_per_kind(services, item):
    stock_up(services, item.id, 100)

    first = services.posting.create_invoice(sale_payload(item.id, quantity=1))
    second = services.posting.create_invoice(sale_payload(item.id, quantity=1))
    purchase = services.posting.create_invoice({
        "kind": "purchase",
        "lines": [{"item_id": item.id, "quantity": 1, "unit_price": "10"}],
    })

    assert [first["reference_number"], second["reference_number"]] == ["SI-000001", "SI-000002"]
    assert purchase["reference_number"] == "PI-000001"


def test_purchase_and_purchase_return(services, item):
    purchase = services.posting.create_invoice({
        "kind": "purchase",
        "counterparty_id": "SUP-1",
        "lines": [{"item_id": item.id, "quantity": 10, "unit_price": "50", "tax_codes": ["GST17"]}],
    })

    assert services.stock.on_hand(item.id) == D("10")
    assert _ledger(services, purchase) == {
        "5000": (D("500.00"), D("0")),
        "1300": (D("85.00"), D("0")),
        "2000": (D("0"), D("585.00")),
    }

    ret = _return(services, purchase, item.id, 4)

    assert ret["kind"] == "return_of_purchase"
    assert ret["reference_number"] == "PR-000001"
    assert ret["counterparty_id"] == "SUP-1"
    assert ret["totals"]["grand_total"] == "-234.00"
    assert services.stock.on_hand(item.id) == D("6")
    assert _ledger(services, ret) == {
        "2000": (D("234.00"), D("0")),
        "5000": (D("0"), D("200.00")),
        "1300": (D("0"), D("34.00")),
    }


def test_discounted_sale_posts_discount_account(services, item):
    stock_up(services, item.id, 10)

    sale = services.posting.create_invoice(
        sale_payload(item.id, discount="100", discount_type="amount")
    )

    assert sale["totals"]["total_discount"] == "100.00"
    assert sale["totals"]["taxable_amount"] == "900.00"
    assert sale["totals"]["grand_total"] == "1062.00"
    assert _ledger(services, sale) == {
        "1100": (D("1062.00"), D("0")),
        "4100": (D("100.00"), D("0")),
        "4000": (D("0"), D("1000.00")),
        "2200": (D("0"), D("162.00")),
    }


def test_tax_inclusive_sale(services, item):
    stock_up(services, item.id, 1)

    sale = services.posting.create_invoice({
        "kind": "sale",
        "is_tax_inclusive": True,
        "lines": [{"item_id": item.id, "quantity": 1, "unit_price": "118"}],
    })

    assert sale["is_tax_inclusive"] is True
    assert sale["totals"]["taxable_amount"] == "100.00"
    assert sale["totals"]["total_tax"] == "18.00"
    assert sale["totals"]["grand_total"] == "118.00"


def test_box_and_unit_quantities_use_pack_size(services, item):
    stock_up(services, item.id, 100)

    sale = services.posting.create_invoice({
        "kind": "sale",
        "lines": [{"item_id": item.id, "box_qty": 2, "unit_qty": 3, "unit_price": "1", "tax_codes": []}],
    })

    assert D(sale["lines"][0]["quantity"]) == D("27")
    assert sale["totals"]["grand_total"] == "27.00"
    assert services.stock.on_hand(item.id) == D("73")


def test_zero_value_invoice_has_no_ledger_batch(services, untaxed_item):
    stock_up(services, untaxed_item.id, 5)

    sale = services.posting.create_invoice(sale_payload(untaxed_item.id, quantity=2, unit_price="0"))

    assert sale["status"] == "confirmed"
    assert services.ledger.entries_for_reference("sale", sale["id"]) == []
    assert services.stock.on_hand(untaxed_item.id) == D("3")


def test_sale_invalidates_cache_keys_after_commit(services, item, cache_sink):
    stock_up(services, item.id, 10)
    cache_sink.clear()

    sale = services.posting.create_invoice(sale_payload(item.id, quantity=1))

    assert cache_sink.batches == [sorted([
        f"transaction:{sale['id']}",
        "transactions:list",
        f"stock:{item.id}",
        "ledger:1100",
        "ledger:4000",
        "ledger:2200",
    ])]


# =============================================================================
# DRAFTS
# =============================================================================

def test_draft_has_no_side_effects_until_confirmed(services, item, db_session):
    stock_up(services, item.id, 10)

    draft = services.posting.create_invoice(sale_payload(item.id, quantity=4), confirm=False)

    assert draft["status"] == "draft"
    assert draft["confirmed_at"] is None
    assert draft["totals"]["grand_total"] == "472.00"
    assert services.stock.on_hand(item.id) == D("10")
    assert services.ledger.entries_for_reference("sale", draft["id"]) == []
    with pytest.raises(ValidationError):
        _return(services, draft, item.id, 1)

    confirmed = services.posting.confirm_invoice(draft["id"])

    assert confirmed["status"] == "confirmed"
    assert confirmed["reference_number"] == draft["reference_number"]
    assert services.stock.on_hand(item.id) == D("6")
    assert _ledger(services, confirmed)["1100"] == (D("472.00"), D("0"))

    with pytest.raises(ValidationError):
        services.posting.confirm_invoice(draft["id"])


def test_repair_posting_refuses_existing_batch(services, item):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id, quantity=1))

    with pytest.raises(ValidationError):
        services.posting.post_ledger_for_transaction(sale["id"])


# =============================================================================
# RETURNS
# =============================================================================

def test_partial_return_mirrors_the_sale(services, item):
    """Sale of 10 @ 100 with 18% GST, then 5 returned."""
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))

    ret = _return(services, sale, item.id, 5, reason="Damaged")

    assert ret["kind"] == "return_of_sale"
    assert ret["reference_number"] == "SR-000001"
    assert ret["original_transaction_id"] == sale["id"]
    assert ret["return_reason"] == "Damaged"
    assert ret["totals"]["subtotal"] == "-500.00"
    assert ret["totals"]["total_tax"] == "-90.00"
    assert ret["totals"]["grand_total"] == "-590.00"
    assert D(ret["lines"][0]["quantity"]) == D("-5")
    assert D(ret["lines"][0]["unit_price"]) == D("100")
    assert ret["lines"][0]["original_line_id"] == sale["lines"][0]["id"]

    assert _ledger(services, ret) == {
        "4000": (D("500.00"), D("0")),
        "2200": (D("90.00"), D("0")),
        "1100": (D("0"), D("590.00")),
    }
    assert services.stock.on_hand(item.id) == D("5")
    assert services.posting.get_transaction(sale["id"])["return_ids"] == [ret["id"]]


def test_full_return_mirrors_the_sale_exactly(services, item):
    stock_up(services, item.id, 1000)
    sale = services.posting.create_invoice(sale_payload(item.id, quantity=1000, unit_price="1.0001", tax_codes=[]))

    ret = _return(services, sale, item.id, 1000)

    assert sale["totals"]["grand_total"] == "1000.10"
    assert ret["totals"]["grand_total"] == "-1000.10"
    assert _ledger(services, ret)["1100"] == (D("0"), _ledger(services, sale)["1100"][0])


def test_full_return_with_tax_and_discount_mirrors_the_sale(services, item):
    stock_up(services, item.id, 7)
    sale = services.posting.create_invoice(
        sale_payload(item.id, quantity=7, unit_price="12.3457", discount="3.3333")
    )

    ret = _return(services, sale, item.id, 7)

    for key, value in sale["totals"].items():
        assert D(ret["totals"][key]) == -D(value)
    sale_ledger, ret_ledger = _ledger(services, sale), _ledger(services, ret)
    assert {code: (c, d) for code, (d, c) in sale_ledger.items()} == ret_ledger


@pytest.mark.parametrize("field,value", [
    ("unit_price", "1.00005"),
    ("quantity", "1.0005"),
    ("discount", "0.00001"),
])
def test_invoice_values_finer_than_stored_scale_are_rejected(services, item, db_session, field, value):
    stock_up(services, item.id, 10)
    before = _counts(db_session)

    with pytest.raises(ValidationError) as exc_info:
        services.posting.create_invoice(sale_payload(item.id, **{field: value}))

    assert exc_info.value.details["field"] == field
    assert _counts(db_session) == before


def test_return_quantity_finer_than_stored_scale_is_rejected(services, item):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))

    with pytest.raises(ReturnValidationError) as exc_info:
        _return(services, sale, item.id, "0.0005")

    assert exc_info.value.http_status == 400
    assert services.stock.on_hand(item.id) == D("0")


def test_over_return_is_rejected_without_side_effects(services, item, db_session, cache_sink):
    """5 of 10 already returned; asking for 6 more fails and writes nothing."""
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))
    _return(services, sale, item.id, 5)
    before = _counts(db_session)
    cache_sink.clear()

    with pytest.raises(ReturnValidationError) as exc_info:
        _return(services, sale, item.id, 6)

    error = exc_info.value
    assert error.has_over_return
    assert error.http_status == 409
    assert error.errors[0].available == D("5")
    assert _counts(db_session) == before
    assert cache_sink.batches == []
    assert services.stock.on_hand(item.id) == D("5")

    _return(services, sale, item.id, 5)
    assert services.posting.list_returnable_items(sale["id"]) == []


def test_return_amount_discount_is_prorated(services, item):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(
        sale_payload(item.id, discount="100", discount_type="amount")
    )

    ret = _return(services, sale, item.id, 5)

    assert ret["totals"]["total_discount"] == "-50.00"
    assert ret["totals"]["grand_total"] == "-531.00"
    assert _ledger(services, ret) == {
        "4000": (D("500.00"), D("0")),
        "2200": (D("81.00"), D("0")),
        "1100": (D("0"), D("531.00")),
        "4100": (D("0"), D("50.00")),
    }


def test_return_uses_the_original_tax_codes(services, item, db_session):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))

    item.default_tax_codes = "GST17"
    db_session.commit()
    ret = _return(services, sale, item.id, 1)

    assert ret["totals"]["taxes"] == {"GST18": "-18.00"}


def test_return_allocates_over_original_lines_in_order(services, item):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice({
        "kind": "sale",
        "lines": [
            {"item_id": item.id, "quantity": 3, "unit_price": "100"},
            {"item_id": item.id, "quantity": 4, "unit_price": "90"},
        ],
    })
    first_line, second_line = (line["id"] for line in sale["lines"])

    ret = _return(services, sale, item.id, 5)

    assert [(l["original_line_id"], D(l["quantity"])) for l in ret["lines"]] == [
        (first_line, D("-3")),
        (second_line, D("-2")),
    ]
    # 3 * 100 + 2 * 90
    assert ret["totals"]["subtotal"] == "-480.00"

    ret = _return(services, sale, item.id, 2)
    assert [(l["original_line_id"], D(l["quantity"])) for l in ret["lines"]] == [(second_line, D("-2"))]


def test_returnable_and_validation_report(services, item, untaxed_item):
    stock_up(services, item.id, 10)
    stock_up(services, untaxed_item.id, 10)
    sale = services.posting.create_invoice({
        "kind": "sale",
        "lines": [
            {"item_id": item.id, "quantity": 10, "unit_price": "100"},
            {"item_id": untaxed_item.id, "quantity": 2, "unit_price": "5"},
        ],
    })
    _return(services, sale, item.id, 4)

    returnable = {row["item_id"]: row for row in services.posting.list_returnable_items(sale["id"])}
    assert D(returnable[item.id]["available"]) == D("6")
    assert D(returnable[item.id]["already_returned"]) == D("4")
    assert D(returnable[untaxed_item.id]["available"]) == D("2")

    report = services.posting.validate_return(sale["id"], [
        {"item_id": item.id, "quantity": 3},
        {"item_id": item.id, "quantity": 4},
        {"item_id": untaxed_item.id, "quantity": 1},
        {"item_id": 9999, "quantity": 1},
        {"item_id": untaxed_item.id, "quantity": 0},
    ])

    assert report["valid"] is False
    codes = sorted(e["code"] for e in report["errors"])
    assert codes == ["INVALID_QUANTITY", "ITEM_NOT_IN_ORIGINAL_TRANSACTION", "OVER_RETURN"]
    over = next(e for e in report["errors"] if e["code"] == "OVER_RETURN")
    # duplicates are summed: 3 + 4 > 6
    assert over["details"]["requested"] == "7"
    assert [v["item_id"] for v in report["validated_items"]] == [untaxed_item.id]


def test_return_against_missing_return_or_unknown_item(services, item):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))
    ret = _return(services, sale, item.id, 1)

    with pytest.raises(NotFoundError):
        services.posting.create_return({"items": [{"item_id": item.id, "quantity": 1}]}, 9999)
    with pytest.raises(ValidationError):
        _return(services, ret, item.id, 1)
    with pytest.raises(ReturnValidationError) as exc_info:
        _return(services, sale, 9999, 1)
    assert exc_info.value.http_status == 400


def test_return_invalidates_original_and_returnable_keys(services, item, cache_sink):
    stock_up(services, item.id, 10)
    sale = services.posting.create_invoice(sale_payload(item.id))
    cache_sink.clear()

    ret = _return(services, sale, item.id, 2)

    assert {
        f"transaction:{ret['id']}",
        f"transaction:{sale['id']}",
        f"returnable:{sale['id']}",
        "transactions:list",
        f"stock:{item.id}",
    } <= cache_sink.keys


# =============================================================================
# FAILURES ROLL BACK EVERYTHING
# =============================================================================

def test_ledger_failure_rolls_back_stock_and_transaction(services, item, db_session, cache_sink):
    stock_up(services, item.id, 10)
    db_session.query(Account).filter_by(code="4000").one().is_active = False
    db_session.commit()
    before = _counts(db_session)
    cache_sink.clear()

    with pytest.raises(ValidationError):
        services.posting.create_invoice(sale_payload(item.id))

    assert _counts(db_session) == before
    assert services.stock.on_hand(item.id) == D("10")
    assert db_session.query(DocumentSequence).count() == 0
    assert cache_sink.batches == []


def test_unknown_tax_code_writes_nothing(services, item, db_session):
    with pytest.raises(UnknownTaxCode):
        services.posting.create_invoice(sale_payload(item.id, tax_codes=["VAT99"]))

    assert db_session.query(Transaction).count() == 0


def test_inactive_item_rejected(services, item, db_session):
    item.is_active = False
    db_session.commit()

    with pytest.raises(ValidationError):
        services.posting.create_invoice(sale_payload(item.id))


def test_cancelled_posting_leaves_no_rows(services, item, db_session):
    stock_up(services, item.id, 10)
    before = _counts(db_session)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(PostingCancelledError):
        services.posting.create_invoice(sale_payload(item.id), cancel_event=cancel)

    assert _counts(db_session) == before


def test_reject_policy_fails_the_whole_sale(services, item, db_session, monkeypatch):
    monkeypatch.setattr(services.posting, "stock", StockMovementRecorder(services.items, negative_policy="reject"))
    stock_up(services, item.id, 3)
    before = _counts(db_session)

    with pytest.raises(InsufficientStockError):
        services.posting.create_invoice(sale_payload(item.id, quantity=4))

    assert _counts(db_session) == before
    assert services.stock.on_hand(item.id) == D("3")


def test_clamp_policy_lets_the_sale_through(services, item):
    stock_up(services, item.id, 3)

    services.posting.create_invoice(sale_payload(item.id, quantity=4))

    movement = services.stock.list_movements(item.id, limit=1)[0]
    assert movement.was_clamped
    assert D(movement.quantity_delta) == D("-3")
    assert services.stock.on_hand(item.id) == D("0")
