"""Auth blueprint — /auth/*

Session login for operators using the back office. Scripts use the
Bearer OPERATOR_API_KEY instead and never touch these routes.

Session routes stay CSRF-protected: GET /auth/login hands out a token to
send back as X-CSRFToken.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from codledger.extensions import db, limiter
from codledger.models.user import User
from codledger.services.audit_service import log_audit
from codledger.utils import utcnow

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _error(message, status):
    return jsonify({"status": "error", "error": "unauthorized", "message": message}), status


# ──────────────────────────────────────────────
# GET/POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["GET", "POST"])
@limiter.limit("15 per minute", methods=["POST"])
def login():
    """Email + password login.

    GET: returns the CSRF token (and the current user, if any)
    POST: JSON or form body with email, password, remember
    """
    if request.method == "GET":
        data = {"csrf_token": generate_csrf()}
        if current_user.is_authenticated:
            data["user"] = current_user.to_dict()
        return jsonify({"status": "success", "data": data})

    body = request.get_json(silent=True) or request.form
    email = (body.get("email") or "").lower().strip()
    password = body.get("password") or ""
    remember = bool(body.get("remember"))

    if not email or not password:
        return jsonify({
            "status": "error",
            "error": "validation_error",
            "message": "Email and password are required.",
        }), 400

    user = User.query.filter_by(email=email).first()

    if user is None or not check_password_hash(user.password_hash, password):
        return _error("Invalid email or password.", 401)

    if not user.is_active:
        return _error("Your account has been deactivated.", 403)

    login_user(user, remember=remember)
    user.last_login_at = utcnow()

    log_audit("operator.login", entity_type="user", entity_id=user.id, actor_id=user.id)
    db.session.commit()

    return jsonify({"status": "success", "data": user.to_dict()})


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
def logout():
    logout_user()
    return jsonify({"status": "success"})
