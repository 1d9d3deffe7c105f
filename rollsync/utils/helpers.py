"""Helper functions for the application."""
from flask import current_app, jsonify
from typing import Any, Dict


def handle_error(error, status_code: int):
    """Handle application errors with consistent format."""
    return jsonify({
        'error': True,
        'message': str(error),
        'status_code': status_code
    }), status_code


def success_response(data: Any = None, message: str = "Success", status_code: int = 200):
    """Return consistent success response."""
    response = {
        'error': False,
        'message': message
    }

    if data is not None:
        response['data'] = data

    return jsonify(response), status_code


def error_response(message: str, status_code: int = 400, code: str = None, details: Dict = None):
    """Return consistent error response."""
    response = {
        'error': True,
        'message': message,
        'status_code': status_code
    }
    if code:
        response['code'] = code
    if details:
        response['details'] = details

    return jsonify(response), status_code


def get_engine():
    """Attendance engine bound to the current app."""
    return current_app.extensions['attendance']
