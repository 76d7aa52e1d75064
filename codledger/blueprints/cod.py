"""COD blueprint — /cod/*

Driver queues, settlement, and reconciliation of partial failures.
Every route requires an operator (Bearer key or admin session).

Settlement runs synchronously on the request thread; the upstream wallet
calls are the slow part, and they never block the retry scheduler.
"""

import logging

from flask import Blueprint, g, jsonify, request

from codledger.decorators import operator_required
from codledger.errors import ValidationError
from codledger.extensions import db
from codledger.services import cod_queue, settlement_service
from codledger.services.audit_service import log_audit
from codledger.utils import amount_to_json, parse_timestamp

logger = logging.getLogger(__name__)

cod_bp = Blueprint("cod", __name__, url_prefix="/cod")


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _settlement_result(attempt):
    return {
        "entry": attempt.entry.to_dict(),
        "attempt": attempt.to_dict(),
    }


# ──────────────────────────────────────────────
# Queues
# ──────────────────────────────────────────────

@cod_bp.route("/queue/<driver_id>", methods=["GET"])
@operator_required
def driver_queue(driver_id):
    """GET /cod/queue/<driver_id>?status=pending|settled"""
    entries = cod_queue.list_queue(driver_id, status=request.args.get("status"))
    return jsonify({
        "status": "success",
        "data": {
            "driver_id": driver_id,
            "pending_total": amount_to_json(cod_queue.pending_total(driver_id)),
            "entries": [e.to_dict() for e in entries],
        },
    })


@cod_bp.route("/queue/<driver_id>/oldest-pending", methods=["GET"])
@operator_required
def oldest_pending(driver_id):
    entry = cod_queue.oldest_pending(driver_id)
    return jsonify({
        "status": "success",
        "data": entry.to_dict() if entry else None,
    })


@cod_bp.route("/queue", methods=["POST"])
@operator_required
def add_manual_entry():
    """Create a manual entry: {driverId, amount, merchantId, note?, createdAt?}"""
    body = _json_body()

    created_at = None
    if body.get("createdAt"):
        created_at = parse_timestamp(body["createdAt"])
        if created_at is None:
            raise ValidationError("createdAt is not a valid timestamp")

    entry = cod_queue.add_manual_entry(
        driver_id=body.get("driverId"),
        amount=body.get("amount"),
        merchant_id=body.get("merchantId"),
        note=body.get("note"),
        created_at=created_at,
    )
    log_audit(
        "cod.manual_entry_created",
        entity_type="cod_entry",
        entity_id=entry.id,
        actor_id=g.operator_id,
        metadata=entry.to_dict(),
    )
    db.session.commit()
    return jsonify({"status": "success", "data": entry.to_dict()}), 201


# ──────────────────────────────────────────────
# Settlement
# ──────────────────────────────────────────────

@cod_bp.route("/queue/settle", methods=["POST"])
@operator_required
def settle():
    """Settle one entry.

    Body: {driverId, entryId, paymentMethod, paidAmount?, override?, reason?}
    ``override`` allows settling an entry that is not the driver's oldest
    pending one; it is flagged in the audit trail.
    """
    body = _json_body()
    for key in ("driverId", "entryId", "paymentMethod"):
        if not body.get(key):
            raise ValidationError(f"Missing required field: {key}")

    override = body.get("override", False)
    if not isinstance(override, bool):
        raise ValidationError("override must be a boolean")

    attempt = settlement_service.settle(
        driver_id=body["driverId"],
        entry_id=body["entryId"],
        payment_method=body["paymentMethod"],
        operator_id=g.operator_id,
        allow_out_of_order=override,
        reason=body.get("reason"),
        paid_amount=body.get("paidAmount"),
    )
    return jsonify({"status": "success", "data": _settlement_result(attempt)})


# ──────────────────────────────────────────────
# Reconciliation of partial failures
# ──────────────────────────────────────────────

@cod_bp.route("/reconciliation", methods=["GET"])
@operator_required
def reconciliation():
    """Attempts where the driver was credited but the merchant was not."""
    attempts = settlement_service.list_needs_reconciliation(
        driver_id=request.args.get("driverId")
    )
    return jsonify({
        "status": "success",
        "data": [a.to_dict() for a in attempts],
    })


@cod_bp.route("/settlements/<attempt_id>/resolve", methods=["POST"])
@operator_required
def resolve_settlement(attempt_id):
    """Body: {"action": "retry_merchant" | "mark_merchant_credited"}"""
    body = _json_body()
    attempt = settlement_service.resolve_partial(
        attempt_id, body.get("action"), operator_id=g.operator_id
    )
    return jsonify({"status": "success", "data": _settlement_result(attempt)})
