"""Webhooks blueprint — /webhooks/*

POST /webhooks/tasks receives task notifications from the upstream
platform. CSRF-exempt; the raw body is required for signature
verification. Everything else here is the operator-facing retry
monitoring API.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from codledger.decorators import operator_required
from codledger.errors import ValidationError
from codledger.extensions import limiter
from codledger.models.webhook_event import WebhookEvent
from codledger.services import event_store, retry_scheduler, webhook_service

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")

MAX_LIST_LIMIT = 500


def _limit_arg(default=100):
    try:
        limit = int(request.args.get("limit", default))
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer")
    return max(1, min(limit, MAX_LIST_LIMIT))


# ──────────────────────────────────────────────
# POST /webhooks/tasks
# ──────────────────────────────────────────────

@webhooks_bp.route("/tasks", methods=["POST"])
@limiter.limit("600 per minute")
def receive_task_event():
    """Receive an upstream task notification.

    1. Verify X-Webhook-Signature when WEBHOOK_SECRET is set (401)
    2. Parse and validate the body (400, nothing stored)
    3. Persist as pending (500 only if the store is down)
    4. Acknowledge 200 regardless of what processing later does
    """
    event = webhook_service.ingest(
        request.get_data(),
        request.headers.get(webhook_service.SIGNATURE_HEADER),
    )

    if current_app.config.get("WEBHOOK_PROCESS_ON_RECEIPT"):
        retry_scheduler.dispatch_async(current_app._get_current_object(), event.id)

    return jsonify({"status": "success"}), 200


# ──────────────────────────────────────────────
# Retry monitoring
# ──────────────────────────────────────────────

@webhooks_bp.route("/events", methods=["GET"])
@operator_required
def list_events():
    """GET /webhooks/events?status=pending|failed|processed|dead_letter&limit=N"""
    status = request.args.get("status", "pending")
    limit = _limit_arg()
    max_retries = current_app.config["WEBHOOK_MAX_RETRIES"]

    if status == "dead_letter":
        events = event_store.list_dead_lettered(max_retries, limit=limit)
    elif status == "pending":
        # Everything the scheduler will still pick up
        events = event_store.list_pending(max_retries, limit=limit)
    elif status in WebhookEvent.STATUSES:
        events = event_store.list_by_status(status, limit=limit)
    else:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: "
            f"{', '.join(WebhookEvent.STATUSES + ['dead_letter'])}"
        )

    return jsonify({
        "status": "success",
        "data": [e.to_dict() for e in events],
    })


@webhooks_bp.route("/events/summary", methods=["GET"])
@operator_required
def events_summary():
    counts = event_store.counts_by_status(current_app.config["WEBHOOK_MAX_RETRIES"])
    return jsonify({"status": "success", "data": counts})


@webhooks_bp.route("/events/<event_id>", methods=["GET"])
@operator_required
def get_event(event_id):
    event = event_store.get_event(event_id)
    return jsonify({"status": "success", "data": event.to_dict(include_payload=True)})


@webhooks_bp.route("/events/<event_id>/retry", methods=["POST"])
@operator_required
def retry_event(event_id):
    """Reset a failed/dead-lettered event to pending.

    Body (optional): {"clearRetries": true}. Clearing is the default.
    """
    body = request.get_json(silent=True)
    if body is None:
        body = {}
    elif not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    clear_retries = body.get("clearRetries", True)
    if not isinstance(clear_retries, bool):
        raise ValidationError("clearRetries must be a boolean")

    event = event_store.reset_for_retry(
        event_id, clear_retries=clear_retries, actor_id=g.operator_id
    )
    return jsonify({"status": "success", "data": event.to_dict()})
