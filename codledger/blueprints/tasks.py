"""Tasks blueprint — /tasks/*

Read access to the cached task mirror, operator edits, and conflict
resolution. Every route requires an operator.
"""

from flask import Blueprint, g, jsonify, request

from codledger.decorators import operator_required
from codledger.errors import ValidationError
from codledger.extensions import db
from codledger.models.task import TaskConflict
from codledger.services import task_reconciler

tasks_bp = Blueprint("tasks", __name__, url_prefix="/tasks")

# camelCase request keys -> model fields
EDIT_KEYS = {
    "codAmount": "cod_amount",
    "feeAmount": "fee_amount",
    "notes": "notes",
    "driverId": "driver_id",
    "merchantId": "merchant_id",
}


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ──────────────────────────────────────────────
# Conflicts
# ──────────────────────────────────────────────

@tasks_bp.route("/conflicts", methods=["GET"])
@operator_required
def list_conflicts():
    """GET /tasks/conflicts?status=open|resolved"""
    status = request.args.get("status", "open")
    if status not in TaskConflict.STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(TaskConflict.STATUSES)}"
        )
    conflicts = task_reconciler.list_conflicts(status=status)
    return jsonify({
        "status": "success",
        "data": [c.to_dict() for c in conflicts],
    })


@tasks_bp.route("/conflicts/<conflict_id>/resolve", methods=["POST"])
@operator_required
def resolve_conflict(conflict_id):
    """Body: {"choice": "keep_local" | "take_external"}"""
    body = _json_body()
    conflict = task_reconciler.resolve_conflict(
        conflict_id, body.get("choice"), operator_id=g.operator_id
    )
    db.session.commit()
    return jsonify({"status": "success", "data": conflict.to_dict()})


# ──────────────────────────────────────────────
# Tasks
# ──────────────────────────────────────────────

@tasks_bp.route("/<external_id>", methods=["GET"])
@operator_required
def get_task(external_id):
    task = task_reconciler.get_task(external_id)
    data = task.to_dict()
    data["history"] = [h.to_dict() for h in task.history.limit(100)]
    conflict = task_reconciler.open_conflict_for(task)
    data["open_conflict"] = conflict.to_dict() if conflict else None
    return jsonify({"status": "success", "data": data})


@tasks_bp.route("/<external_id>", methods=["PATCH"])
@operator_required
def edit_task(external_id):
    """Local edit. Body: any of codAmount, feeAmount, notes, driverId,
    merchantId, plus optional pushUpstream (bool)."""
    body = _json_body()

    push_upstream = body.pop("pushUpstream", False)
    if not isinstance(push_upstream, bool):
        raise ValidationError("pushUpstream must be a boolean")

    unknown = sorted(set(body) - set(EDIT_KEYS))
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(unknown)}")
    if not body:
        raise ValidationError("No fields to update")

    changes = {EDIT_KEYS[key]: value for key, value in body.items()}
    task = task_reconciler.record_local_edit(
        external_id, changes, operator_id=g.operator_id, push_upstream=push_upstream
    )
    db.session.commit()
    return jsonify({"status": "success", "data": task.to_dict()})
