"""
Custom route decorators for access control.

- operator_required: Bearer OPERATOR_API_KEY (scripts, back-office tools)
  OR a logged-in admin session. Sets g.operator_id for the audit trail.
"""

import hmac
from functools import wraps

from flask import current_app, g, jsonify, request
from flask_login import current_user

API_OPERATOR_ID = "api"


def _unauthorized(message):
    return jsonify({"status": "error", "error": "unauthorized", "message": message}), 401


def operator_required(f):
    """Allow access via admin session OR a Bearer token matching OPERATOR_API_KEY."""

    @wraps(f)
    def decorated(*args, **kwargs):
        # Check Bearer token first (for scripts / external access)
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
            expected = current_app.config.get("OPERATOR_API_KEY") or ""
            if expected and hmac.compare_digest(
                token.encode("utf-8", "replace"), expected.encode("utf-8")
            ):
                g.operator_id = API_OPERATOR_ID
                return f(*args, **kwargs)
            return _unauthorized("Invalid API key")

        # Fall back to admin session auth
        if not current_user.is_authenticated or not current_user.is_admin:
            return _unauthorized("Operator authentication required")
        g.operator_id = current_user.id
        return f(*args, **kwargs)

    return decorated

