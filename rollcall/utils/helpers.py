"""Helper functions for the application."""
from flask import jsonify, request
from typing import Any, Dict, Optional

def handle_error(error, status_code: int):
    """Handle application errors with consistent format."""
    return jsonify({
        'error': True,
        'message': str(error),
        'status_code': status_code
    }), status_code

def success_response(data: Any = None, message: str = "Success", status_code: int = 200,
                     meta: Optional[Dict] = None):
    """Return consistent success response."""
    response = {
        'error': False,
        'message': message
    }

    if data is not None:
        response['data'] = data
    if meta:
        response['meta'] = meta

    return jsonify(response), status_code

def error_response(message: str, status_code: int = 400, error_kind: str = None):
    """Return consistent error response."""
    response = {
        'error': True,
        'message': message,
        'status_code': status_code
    }
    if error_kind:
        response['errorKind'] = error_kind

    return jsonify(response), status_code

def domain_error_response(err):
    """Render a service-layer DomainError."""
    return error_response(err.message, err.status_code, err.kind)

def get_json_body() -> Optional[Dict]:
    """Request body as a dict, or None when it is missing or not a JSON object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None

def get_int_arg(name: str, default: int = None) -> Optional[int]:
    """Integer query-string argument; malformed values fall back to ``default``."""
    return request.args.get(name, default=default, type=int)
