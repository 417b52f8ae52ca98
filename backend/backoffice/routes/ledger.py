# Overview: Flask API routes for ledger entries and manual reversals.

from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError, ValidationError
from ..services import get_services
from ..validation import parse_date, require_mapping
from . import error_response

"""
Ledger entries are append-only. The only write exposed here is a reversing
batch: every entry recorded for the reference is posted again with debit and
credit swapped, referenced as ("reversal", "<type>:<id>").
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


@ledger_bp.get("/<reference_type>/<reference_id>")
def get_ledger_entries_route(reference_type: str, reference_id: str):
    try:
        result = get_services().posting.ledger_for_reference(reference_type, reference_id)
        return jsonify(result), 200

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load ledger entries")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/<reference_type>/<reference_id>/reverse")
def reverse_ledger_route(reference_type: str, reference_id: str):
    """
    Request body:
    {
        "reason": "Posted to the wrong customer",
        "date": "2024-05-31"      (optional, default: date of the original entries)
    }
    """
    try:
        data = require_mapping(request.get_json(silent=True))
        reason = (data.get("reason") or "").strip()
        if not reason:
            raise ValidationError("reason is required", field="reason")

        result = get_services().posting.reverse_ledger(
            reference_type,
            reference_id,
            reason,
            parse_date(data.get("date")),
        )
        return jsonify(result), 201

    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reverse ledger entries")
        return jsonify({"error": "Internal server error"}), 500
