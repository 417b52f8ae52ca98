# Overview: Flask API routes for tax computation; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError, ValidationError
from ..services import get_services
from ..validation import parse_bool, parse_date, parse_decimal, parse_tax_codes, require_mapping
from . import error_response


tax_bp = Blueprint("tax", __name__, url_prefix="/api/tax")


@tax_bp.post("/compute")
def compute_tax_route():
    """
    Tax on an amount under one tax code.

    Request body:
    {
        "amount": "100.00",
        "tax_code": "GST18",
        "is_inclusive": false,   (optional)
        "quantity": 3,           (optional, default 1)
        "date": "2024-05-01"     (optional, rate in effect on this date)
    }
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        tax_code = data.get("tax_code")
        if not tax_code:
            raise ValidationError("tax_code is required", field="tax_code")

        result = get_services().tax_engine.compute_tax(
            parse_decimal(data.get("amount"), "amount"),
            tax_code,
            parse_bool(data.get("is_inclusive"), "is_inclusive"),
            parse_decimal(data.get("quantity"), "quantity", required=False, default=1),
            parse_date(data.get("date")),
        )
        return jsonify(result), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute tax")
        return jsonify({"error": "Internal server error"}), 500


@tax_bp.post("/line")
def compute_line_tax_route():
    """
    Breakdown of one invoice line.

    Request body:
    {
        "unit_price": "100.00",
        "quantity": 10,
        "discount": 5,                 (optional)
        "discount_type": "percent",    (optional: percent | amount)
        "tax_codes": ["GST18"],        (optional)
        "is_inclusive": false,         (optional)
        "date": "2024-05-01"           (optional)
    }
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        services = get_services()
        line = services.tax_engine.compute_line_tax(
            parse_decimal(data.get("unit_price"), "unit_price"),
            parse_decimal(data.get("quantity"), "quantity"),
            parse_decimal(data.get("discount"), "discount", required=False, default=0),
            parse_tax_codes(data.get("tax_codes")) or [],
            parse_bool(data.get("is_inclusive"), "is_inclusive"),
            (data.get("discount_type") or "percent").strip().lower(),
            parse_date(data.get("date")),
        )
        return jsonify(line.to_dict(services.tax_engine.places)), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute line tax")
        return jsonify({"error": "Internal server error"}), 500


@tax_bp.post("/invoice")
def compute_invoice_tax_route():
    """
    Totals of a whole invoice without saving anything.

    Request body:
    {
        "is_inclusive": false,
        "date": "2024-05-01",
        "lines": [{"unit_price": "100", "quantity": 2, "tax_codes": ["GST18"]}, ...]
    }
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        raw_lines = data.get("lines")
        if not isinstance(raw_lines, list) or not raw_lines:
            raise ValidationError("At least one line is required", field="lines")

        lines = []
        for i, raw in enumerate(raw_lines):
            raw = require_mapping(raw, f"lines[{i}]")
            lines.append({
                "unit_price": parse_decimal(raw.get("unit_price"), "unit_price"),
                "quantity": parse_decimal(raw.get("quantity"), "quantity"),
                "discount": parse_decimal(raw.get("discount"), "discount", required=False, default=0),
                "discount_type": (raw.get("discount_type") or "percent").strip().lower(),
                "tax_codes": parse_tax_codes(raw.get("tax_codes")) or [],
            })

        invoice = get_services().tax_engine.compute_invoice_tax(
            lines,
            parse_bool(data.get("is_inclusive"), "is_inclusive"),
            parse_date(data.get("date")),
        )
        return jsonify(invoice.to_dict()), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute invoice tax")
        return jsonify({"error": "Internal server error"}), 500
