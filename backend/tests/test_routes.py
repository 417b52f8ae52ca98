"""
HTTP API: JSON in, JSON out, typed errors mapped to status codes.
"""

from decimal import Decimal

import pytest


# =============================================================================
# TAX
# =============================================================================

def test_compute_tax_exclusive(client, ledger_setup):
    response = client.post('/api/tax/compute', json={"amount": "10000", "tax_code": "GST18"})

    assert response.status_code == 200
    data = response.get_json()
    assert data["tax_code"] == "GST18"
    assert data["total"] == {"taxable_amount": "10000.00", "tax_amount": "1800.00", "gross_amount": "11800.00"}


def test_compute_tax_inclusive(client, ledger_setup):
    response = client.post('/api/tax/compute', json={"amount": "11800", "tax_code": "gst18", "is_inclusive": True})

    assert response.status_code == 200
    assert response.get_json()["total"]["taxable_amount"] == "10000.00"


@pytest.mark.parametrize("payload,code", [
    ({"amount": "100", "tax_code": "NOPE"}, "UNKNOWN_TAX_CODE"),
    ({"amount": "100"}, "VALIDATION_ERROR"),
    ({"amount": "-5", "tax_code": "GST18"}, "INVALID_QUANTITY_OR_PRICE"),
    ({"amount": "abc", "tax_code": "GST18"}, "INVALID_QUANTITY_OR_PRICE"),
    ({"amount": "100", "tax_code": 18}, "VALIDATION_ERROR"),
    ({"amount": "NaN", "tax_code": "GST18"}, "INVALID_QUANTITY_OR_PRICE"),
])
def test_compute_tax_errors(client, ledger_setup, payload, code):
    response = client.post('/api/tax/compute', json=payload)

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == code


def test_line_tax_breakdown(client, ledger_setup):
    response = client.post('/api/tax/line', json={
        "unit_price": "100",
        "quantity": 1,
        "tax_codes": ["GST18", "FT3"],
    })

    assert response.status_code == 200
    data = response.get_json()
    assert data["taxes"] == {"GST18": "18.00", "FT3": "3.54"}
    assert data["line_total"] == "121.54"


def test_invoice_tax_totals(client, ledger_setup):
    response = client.post('/api/tax/invoice', json={
        "lines": [
            {"unit_price": "100", "quantity": 10, "tax_codes": ["GST18"]},
            {"unit_price": "50", "quantity": 2, "discount": 10, "tax_codes": ["GST18"]},
        ],
    })

    assert response.status_code == 200
    data = response.get_json()
    assert data["total_discount"] == "10.00"
    assert data["taxes"] == {"GST18": "196.20"}
    assert data["grand_total"] == "1286.20"


def test_invoice_tax_requires_lines(client, ledger_setup):
    response = client.post('/api/tax/invoice', json={"lines": []})

    assert response.status_code == 400


# =============================================================================
# QUANTITIES
# =============================================================================

def test_convert_effective_unit_rate(client):
    response = client.post('/api/quantities/convert', json={
        "operation": "effective_unit_rate",
        "box_qty": 5, "box_rate": 1200, "unit_qty": 3, "unit_rate": 110, "pack_size": 12,
    })

    assert response.status_code == 200
    data = response.get_json()
    assert data["operation"] == "effective_unit_rate"
    assert data["unit_rate"].startswith("100.476")


def test_convert_cartons_and_display(client):
    cartons = client.post('/api/quantities/convert', json={"operation": "cartons", "box_qty": 25})
    display = client.post('/api/quantities/convert', json={
        "operation": "display", "cartons": 1, "boxes": 3, "units": 4,
    })

    assert cartons.get_json()["cartons"] == 3
    assert display.get_json()["display"] == "1 Carton + 3 Boxes + 4 Units"


def test_convert_carton_summary(client):
    response = client.post('/api/quantities/convert', json={
        "operation": "carton_summary",
        "boxes_per_carton": 12,
        "lines": [{"item_id": 1, "box_qty": 5}, {"item_id": 2, "box_qty": 8}],
    })

    assert response.status_code == 200
    assert response.get_json()["total_cartons"] == 2


@pytest.mark.parametrize("payload,code", [
    ({"operation": "teleport"}, "VALIDATION_ERROR"),
    ({"operation": "total_units", "box_qty": -1, "pack_size": 12}, "INVALID_QUANTITY"),
    ({"operation": "breakdown", "total_units": 10, "pack_size": 0}, "INVALID_QUANTITY"),
    ({"operation": "cartons", "box_qty": "NaN"}, "INVALID_QUANTITY"),
    ({"operation": "cartons", "box_qty": "Infinity"}, "INVALID_QUANTITY"),
    ({"operation": "total_units", "box_qty": 1, "unit_qty": "NaN", "pack_size": 12}, "INVALID_QUANTITY"),
    ({"operation": "breakdown", "pack_size": 12}, "INVALID_QUANTITY"),
])
def test_convert_errors(client, payload, code):
    response = client.post('/api/quantities/convert', json=payload)

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == code


# =============================================================================
# TRANSACTIONS AND RETURNS
# =============================================================================

def _stock(client, item_id, quantity):
    response = client.post('/api/stock/adjust', json={
        "item_id": item_id, "quantity": quantity, "direction": "increase", "reason": "Opening stock",
    })
    assert response.status_code == 201


def _sell(client, item_id, quantity=10, **extra):
    payload = {
        "kind": "sale",
        "counterparty_id": "CUST-1",
        "lines": [{"item_id": item_id, "quantity": quantity, "unit_price": "100"}],
    }
    payload.update(extra)
    return client.post('/api/transactions', json=payload)


def test_create_and_get_sale(client, item):
    _stock(client, item.id, 10)

    response = _sell(client, item.id)

    assert response.status_code == 201
    txn = response.get_json()["transaction"]
    assert txn["totals"]["grand_total"] == "1180.00"

    fetched = client.get(f"/api/transactions/{txn['id']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["transaction"]["reference_number"] == txn["reference_number"]


def test_create_sale_validation_errors(client, item):
    bad_kind = client.post('/api/transactions', json={"kind": "gift", "lines": []})
    no_lines = client.post('/api/transactions', json={"kind": "sale", "lines": []})
    bad_item = _sell(client, 9999)
    not_json = client.post('/api/transactions', data="nope", content_type="text/plain")

    assert bad_kind.status_code == 400
    assert no_lines.status_code == 400
    assert bad_item.status_code == 404
    assert not_json.status_code == 400


def test_get_missing_transaction(client, db_session):
    response = client.get('/api/transactions/9999')

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "NOT_FOUND"


def test_draft_then_confirm(client, item):
    _stock(client, item.id, 10)
    draft = _sell(client, item.id, quantity=2, confirm=False).get_json()["transaction"]

    assert draft["status"] == "draft"

    response = client.post(f"/api/transactions/{draft['id']}/confirm")
    assert response.status_code == 200
    assert response.get_json()["transaction"]["status"] == "confirmed"

    again = client.post(f"/api/transactions/{draft['id']}/confirm")
    assert again.status_code == 400


def test_return_flow(client, item):
    _stock(client, item.id, 10)
    sale = _sell(client, item.id).get_json()["transaction"]
    base = f"/api/transactions/{sale['id']}"

    first = client.post(f"{base}/returns", json={"items": [{"item_id": item.id, "quantity": 5}], "reason": "Damaged"})
    assert first.status_code == 201
    assert first.get_json()["transaction"]["totals"]["grand_total"] == "-590.00"

    check = client.post(f"{base}/returns/validate", json={"items": [{"item_id": item.id, "quantity": 6}]})
    assert check.status_code == 200
    assert check.get_json()["valid"] is False
    assert check.get_json()["errors"][0]["code"] == "OVER_RETURN"

    over = client.post(f"{base}/returns", json={"items": [{"item_id": item.id, "quantity": 6}]})
    assert over.status_code == 409
    error = over.get_json()["error"]
    assert error["code"] == "RETURN_VALIDATION_FAILED"
    assert error["details"]["errors"][0]["details"]["available"] == "5.000"

    returnable = client.get(f"{base}/returnable").get_json()
    assert returnable["original_transaction_id"] == sale["id"]
    assert Decimal(returnable["items"][0]["available"]) == Decimal("5")


def test_return_requires_items(client, item):
    _stock(client, item.id, 10)
    sale = _sell(client, item.id).get_json()["transaction"]

    response = client.post(f"/api/transactions/{sale['id']}/returns", json={"items": []})

    assert response.status_code == 400


# =============================================================================
# STOCK
# =============================================================================

def test_stock_adjust_requires_reason(client, item):
    response = client.post('/api/stock/adjust', json={"item_id": item.id, "quantity": 5, "direction": "increase"})

    assert response.status_code == 400
    assert response.get_json()["error"]["details"]["field"] == "reason"


def test_stock_adjust_clamp_and_lookup(client, item):
    _stock(client, item.id, 50)

    response = client.post('/api/stock/adjust', json={
        "item_id": item.id, "quantity": 80, "direction": "decrease", "reason": "Count",
    })

    assert response.status_code == 201
    movement = response.get_json()["movement"]
    assert movement["was_clamped"] is True
    assert Decimal(movement["requested_delta"]) == Decimal("-80")

    stock = client.get(f"/api/stock/{item.id}").get_json()
    assert Decimal(stock["on_hand"]) == Decimal("0")
    assert len(stock["movements"]) == 2


def test_stock_transfer(client, item, warehouse, branch_warehouse):
    client.post('/api/stock/adjust', json={
        "item_id": item.id, "quantity": 10, "direction": "increase",
        "reason": "Opening stock", "warehouse_id": warehouse.id,
    })

    response = client.post('/api/stock/transfer', json={
        "item_id": item.id,
        "from_warehouse_id": warehouse.id,
        "to_warehouse_id": branch_warehouse.id,
        "quantity": 4,
        "reason": "Rebalance",
    })

    assert response.status_code == 201
    assert Decimal(response.get_json()["to_on_hand"]) == Decimal("4")

    too_much = client.post('/api/stock/transfer', json={
        "item_id": item.id,
        "from_warehouse_id": warehouse.id,
        "to_warehouse_id": branch_warehouse.id,
        "quantity": 100,
        "reason": "Rebalance",
    })
    assert too_much.status_code == 409
    assert too_much.get_json()["error"]["code"] == "INSUFFICIENT_STOCK"


def test_stock_for_unknown_item(client, db_session):
    response = client.get('/api/stock/9999')

    assert response.status_code == 404


# =============================================================================
# LEDGER
# =============================================================================

def test_ledger_entries_and_reversal(client, item):
    _stock(client, item.id, 10)
    sale = _sell(client, item.id).get_json()["transaction"]

    entries = client.get(f"/api/ledger/sale/{sale['id']}")
    assert entries.status_code == 200
    assert entries.get_json()["total_debit"] == "1180.00"
    assert entries.get_json()["total_credit"] == "1180.00"

    no_reason = client.post(f"/api/ledger/sale/{sale['id']}/reverse", json={})
    assert no_reason.status_code == 400

    reversal = client.post(f"/api/ledger/sale/{sale['id']}/reverse", json={"reason": "Wrong customer"})
    assert reversal.status_code == 201
    assert len(reversal.get_json()["entries"]) == 3

    reversed_entries = client.get(f"/api/ledger/reversal/sale:{sale['id']}")
    assert reversed_entries.get_json()["total_debit"] == "1180.00"


def test_ledger_for_unknown_reference(client, db_session):
    response = client.get('/api/ledger/sale/9999')

    assert response.status_code == 404
