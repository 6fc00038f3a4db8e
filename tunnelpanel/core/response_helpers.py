"""Shared JSON response helpers for the tunnel control endpoints."""

from flask import jsonify


def ok_response(message, **extra):
    """Return ``{success: true, message}`` plus any extra payload keys."""
    payload = {"success": True, "message": message}
    payload.update(extra)
    return jsonify(payload)


def result_response(result, failure_status=409):
    """Map a ``{success, message}`` operation result onto an HTTP response."""
    if result.get("success"):
        return jsonify(result)
    return jsonify(result), failure_status


def internal_error_response():
    """Return the generic error payload; stack traces never reach callers."""
    return jsonify({"success": False, "message": "Internal server error."}), 500
