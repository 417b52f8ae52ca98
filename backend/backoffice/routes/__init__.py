from flask import jsonify

from ..errors import BackofficeError


def error_response(exc: BackofficeError):
    """Map a typed engine error to its JSON body and HTTP status."""
    return jsonify({"error": exc.to_dict()}), exc.http_status
