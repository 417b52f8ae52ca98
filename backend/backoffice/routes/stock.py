# Overview: Flask API routes for stock adjustments, transfers and on-hand lookups.

from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError, ValidationError
from ..services import get_services
from ..validation import parse_decimal, parse_int, require_mapping
from . import error_response


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _reason(data) -> str:
    reason = (data.get("reason") or "").strip()
    if not reason:
        raise ValidationError("reason is required", field="reason")
    return reason[:255]


@stock_bp.post("/adjust")
def adjust_stock_route():
    """
    Manual on-hand adjustment.

    Request body:
    {
        "item_id": 1,
        "quantity": 5,
        "direction": "increase",      (increase | decrease)
        "reason": "Cycle count",
        "warehouse_id": 1             (optional)
    }

    Under the "clamp" policy a decrease larger than on-hand stops at zero and
    the movement shows both requested_delta and the applied quantity_delta.
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        result = get_services().posting.adjust_stock(
            parse_int(data.get("item_id"), "item_id"),
            parse_decimal(data.get("quantity"), "quantity"),
            (data.get("direction") or "").strip().lower(),
            reason=_reason(data),
            warehouse_id=parse_int(data.get("warehouse_id"), "warehouse_id", required=False),
        )
        return jsonify(result), 201

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/transfer")
def transfer_stock_route():
    """
    Move stock between warehouses. Never clamps.

    Request body:
    {
        "item_id": 1,
        "from_warehouse_id": 1,
        "to_warehouse_id": 2,
        "quantity": 5,
        "reason": "Rebalance"
    }
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        result = get_services().posting.transfer_stock(
            parse_int(data.get("item_id"), "item_id"),
            parse_int(data.get("from_warehouse_id"), "from_warehouse_id", required=False),
            parse_int(data.get("to_warehouse_id"), "to_warehouse_id", required=False),
            parse_decimal(data.get("quantity"), "quantity"),
            reason=_reason(data),
        )
        return jsonify(result), 201

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to transfer stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/<int:item_id>")
def get_stock_route(item_id: int):
    """On-hand for an item (optionally ?warehouse_id=), balances and recent movements."""
    try:
        services = get_services()
        services.items.require_active_item(item_id)
        warehouse_id = request.args.get("warehouse_id", type=int)
        limit = request.args.get("limit", default=50, type=int)

        return jsonify({
            "item_id": item_id,
            "warehouse_id": warehouse_id,
            "on_hand": str(services.stock.on_hand(item_id, warehouse_id)),
            "balances": [b.to_dict() for b in services.stock.balances(item_id)],
            "movements": [m.to_dict() for m in services.stock.list_movements(item_id, warehouse_id, limit)],
        }), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load stock")
        return jsonify({"error": "Internal server error"}), 500
