# Overview: Flask API routes for box/unit/carton conversion.

from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError, ValidationError
from ..services import quantity_service
from ..validation import require_mapping
from . import error_response


quantities_bp = Blueprint("quantities", __name__, url_prefix="/api/quantities")


def _total_units(data):
    return {"total_units": str(quantity_service.total_units(
        data.get("box_qty", 0), data.get("unit_qty", 0), data.get("pack_size", 1)))}


def _breakdown(data):
    boxes, units = quantity_service.breakdown(data.get("total_units"), data.get("pack_size"))
    return {"boxes": str(boxes), "units": str(units)}


def _cartons(data):
    per_carton = data.get("boxes_per_carton", current_app.config["DEFAULT_BOXES_PER_CARTON"])
    return {"cartons": quantity_service.carton_count(data.get("box_qty", 0), per_carton)}


def _unit_to_box_rate(data):
    return {"box_rate": str(quantity_service.unit_rate_to_box_rate(data.get("unit_rate"), data.get("pack_size")))}


def _box_to_unit_rate(data):
    return {"unit_rate": str(quantity_service.box_rate_to_unit_rate(data.get("box_rate"), data.get("pack_size")))}


def _line_amount(data):
    return {"amount": str(quantity_service.line_amount(
        data.get("box_qty", 0), data.get("box_rate", 0), data.get("unit_qty", 0), data.get("unit_rate", 0)))}


def _effective_unit_rate(data):
    return {"unit_rate": str(quantity_service.effective_unit_rate(
        data.get("box_qty", 0), data.get("box_rate", 0), data.get("unit_qty", 0),
        data.get("unit_rate", 0), data.get("pack_size", 1)))}


def _display(data):
    return {"display": quantity_service.format_display(
        data.get("cartons", 0), data.get("boxes", 0), data.get("units", 0))}


def _carton_summary(data):
    lines = data.get("lines")
    if not isinstance(lines, list):
        raise ValidationError("lines must be a list", field="lines")
    per_carton = data.get("boxes_per_carton", current_app.config["DEFAULT_BOXES_PER_CARTON"])
    return quantity_service.invoice_carton_summary([require_mapping(l, "line") for l in lines], per_carton)


OPERATIONS = {
    "total_units": _total_units,
    "breakdown": _breakdown,
    "cartons": _cartons,
    "unit_to_box_rate": _unit_to_box_rate,
    "box_to_unit_rate": _box_to_unit_rate,
    "line_amount": _line_amount,
    "effective_unit_rate": _effective_unit_rate,
    "display": _display,
    "carton_summary": _carton_summary,
}


@quantities_bp.post("/convert")
def convert_quantity_route():
    """
    Request body: {"operation": "<name>", ...operation arguments}

    Operations:
        total_units          box_qty, unit_qty, pack_size
        breakdown            total_units, pack_size
        cartons              box_qty, boxes_per_carton (default from config)
        unit_to_box_rate     unit_rate, pack_size
        box_to_unit_rate     box_rate, pack_size
        line_amount          box_qty, box_rate, unit_qty, unit_rate
        effective_unit_rate  box_qty, box_rate, unit_qty, unit_rate, pack_size
        display              cartons, boxes, units
        carton_summary       lines [{box_qty, item_id}], boxes_per_carton
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        operation = data.get("operation")
        handler = OPERATIONS.get(operation)
        if handler is None:
            raise ValidationError(
                f"operation must be one of {', '.join(sorted(OPERATIONS))}",
                field="operation",
            )
        result = handler(data)
        result["operation"] = operation
        return jsonify(result), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to convert quantity")
        return jsonify({"error": "Internal server error"}), 500
