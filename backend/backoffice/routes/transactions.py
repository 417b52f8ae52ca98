# Overview: Flask API routes for invoices and returns; parses input and returns JSON responses.

"""
Invoice & Return API Routes

DESIGN:
- Create sale/purchase invoices, confirmed immediately or saved as drafts
- Confirm drafts (stock + ledger applied at that point)
- Partial returns against a confirmed original, validated against history
- All posting logic lives in the orchestrator; these routes only parse JSON
  and map typed errors to status codes
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError
from ..services import get_services
from ..validation import parse_bool, parse_return_payload, require_mapping
from . import error_response


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


# =============================================================================
# INVOICES
# =============================================================================

@transactions_bp.post("")
def create_invoice_route():
    """
    Create a sale or purchase invoice.

    Request body:
    {
        "kind": "sale",                      (sale | purchase)
        "counterparty_id": "CUST-001",       (optional)
        "date": "2024-05-01",                (optional, default today)
        "is_tax_inclusive": false,           (optional)
        "confirm": true,                     (optional; false saves a draft)
        "lines": [
            {
                "item_id": 1,
                "quantity": 10,              (or "box_qty" / "unit_qty")
                "unit_price": "100.00",
                "discount": 5,               (optional)
                "discount_type": "percent",  (optional: percent | amount)
                "tax_codes": ["GST18"],      (optional, default: item's codes)
                "warehouse_id": 1            (optional)
            }
        ]
    }

    Returns:
        201: Transaction with lines and totals
        400: Invalid input
        404: Item / warehouse not found
        409: Insufficient stock (reject policy) or concurrent conflict
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        confirm = parse_bool(data.get("confirm"), "confirm", default=True)
        txn = get_services().posting.create_invoice(data, confirm=confirm)
        return jsonify({"transaction": txn}), 201

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create invoice")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/confirm")
def confirm_invoice_route(transaction_id: int):
    try:
        txn = get_services().posting.confirm_invoice(transaction_id)
        return jsonify({"transaction": txn}), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm invoice")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/<int:transaction_id>")
def get_transaction_route(transaction_id: int):
    try:
        txn = get_services().posting.get_transaction(transaction_id)
        return jsonify({"transaction": txn}), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load transaction")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RETURNS
# =============================================================================

@transactions_bp.get("/<int:transaction_id>/returnable")
def list_returnable_route(transaction_id: int):
    """Items of a confirmed original that still have quantity left to return."""
    try:
        items = get_services().posting.list_returnable_items(transaction_id)
        return jsonify({"original_transaction_id": transaction_id, "items": items}), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list returnable items")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/returns/validate")
def validate_return_route(transaction_id: int):
    """
    Dry-run of a return. Always 200 when the original is valid; the body
    carries {"valid", "errors", "validated_items"}.

    Request body:
    {
        "items": [{"item_id": 1, "quantity": 5}]
    }
    """
    try:
        request_data = parse_return_payload(request.get_json(silent=True), transaction_id)
        result = get_services().posting.validate_return(transaction_id, request_data.items)
        return jsonify(result), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to validate return")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/returns")
def create_return_route(transaction_id: int):
    """
    Post a return against a confirmed sale or purchase.

    Request body:
    {
        "items": [{"item_id": 1, "quantity": 5}],
        "date": "2024-05-10",             (optional, default today)
        "reason": "Damaged in transit",   (optional)
        "notes": "..."                    (optional)
    }

    Returns:
        201: Return transaction
        400: Invalid input / item not on original
        404: Original not found
        409: Over-return or concurrent conflict
    """
    try:
        request_data = parse_return_payload(request.get_json(silent=True), transaction_id)
        txn = get_services().posting.create_return(request_data)
        return jsonify({"transaction": txn}), 201

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create return")
        return jsonify({"error": "Internal server error"}), 500
