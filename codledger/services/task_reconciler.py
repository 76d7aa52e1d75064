"""Task reconciler — applies webhook events to the cached task mirror.

``apply`` is idempotent: an event whose payload fingerprint matches the
last applied one, or whose external update time is older than or equal to
the last applied update, is accepted without touching state. Fields an
operator edited locally and has not yet synced are never overwritten by an
incoming event; a differing incoming value raises a TaskConflict instead,
which a human resolves with ``resolve_conflict``.

When an event leaves a task delivered with a nonzero COD amount, a COD
queue entry is created in the same transaction (at most one per task).

Functions flush but do NOT commit — the caller commits (the retry
scheduler commits together with marking the event processed).
"""

import logging
from collections import namedtuple

import bleach
from flask import current_app

from codledger.errors import InvalidTransition, NotFound, ValidationError
from codledger.extensions import db
from codledger.models.task import CachedTask, TaskConflict, TaskHistory
from codledger.services import cod_queue, upstream_client
from codledger.services.audit_service import log_audit
from codledger.services.payloads import TaskEvent
from codledger.utils import as_utc, to_amount, utcnow

logger = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
CONFLICT = "conflict"

ApplyResult = namedtuple("ApplyResult", ["outcome", "task", "conflict", "cod_entry"])

AMOUNT_FIELDS = ("cod_amount", "fee_amount")
HISTORY_FIELDS = ("cod_amount", "driver_id", "merchant_id")
# An open conflict over any of these defers COD enqueueing until resolved.
COD_FIELDS = ("cod_amount", "driver_id", "merchant_id")


def _to_json(value):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)  # Decimal amounts keep their exact text form


def _from_json(field, value):
    if field in AMOUNT_FIELDS:
        return to_amount(value)
    return value


def _sanitize(text):
    """Strip all HTML tags from operator input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def _record_history(task, field, old, new, source, event_id=None, actor_id=None):
    db.session.add(TaskHistory(
        task=task,
        field=field,
        old_value=_to_json(old),
        new_value=_to_json(new),
        source=source,
        event_id=event_id,
        actor_id=actor_id,
    ))


def _completed_statuses():
    return current_app.config.get("COD_COMPLETED_STATUSES", [2])


def get_task(external_id):
    task = CachedTask.query.filter_by(external_id=str(external_id)).first()
    if task is None:
        raise NotFound(f"Task {external_id} not found")
    return task


def open_conflict_for(task):
    if task.id is None:
        return None
    return TaskConflict.query.filter_by(task_id=task.id, status="open").first()


# ──────────────────────────────────────────────
# Applying events
# ──────────────────────────────────────────────

def apply(event):
    """Apply one WebhookEvent to its cached task.

    Returns an ApplyResult. Raises WebhookPayloadError for structurally
    invalid payloads and lets collaborator/storage errors propagate so the
    scheduler records the failure and retries.
    """
    parsed = TaskEvent.from_payload(event.payload or {})
    external_at = parsed.updated_at or as_utc(event.created_at) or utcnow()

    task = CachedTask.query.filter_by(external_id=parsed.external_task_id).first()
    if task is None:
        task = CachedTask(
            external_id=parsed.external_task_id,
            local_edit_fields=[],
            raw_snapshot={},
        )
        db.session.add(task)
        applied_at = None
    else:
        applied_at = as_utc(task.last_external_update_at)
        if task.last_payload_hash == parsed.fingerprint:
            logger.info(f"Event {event.id} for job {task.external_id} already applied (same payload)")
            return ApplyResult(ALREADY_APPLIED, task, None, None)
        if applied_at is not None and external_at <= applied_at:
            logger.info(
                f"Event {event.id} for job {task.external_id} is not newer than "
                f"{applied_at.isoformat()}, skipping"
            )
            return ApplyResult(ALREADY_APPLIED, task, None, None)

    # --- Unsynced local edits are protected ---
    protected = set(task.local_edit_fields or [])
    colliding = sorted(
        f for f in protected
        if f in parsed.fields and parsed.fields[f] != getattr(task, f)
    )
    synced = {
        f for f in protected
        if f in parsed.fields and parsed.fields[f] == getattr(task, f)
    }

    conflict = None
    if colliding:
        conflict = _record_conflict(task, event, colliding, parsed.fields, external_at)

    # --- Merge ---
    for field, value in parsed.fields.items():
        if field in protected:
            continue
        old = getattr(task, field)
        if old != value:
            setattr(task, field, value)
            if field in HISTORY_FIELDS:
                _record_history(task, field, old, value, "webhook", event_id=event.id)

    if parsed.job_status is not None and task.status != parsed.job_status:
        _record_history(task, "status", task.status, parsed.job_status, "webhook",
                        event_id=event.id)
        task.status = parsed.job_status

    if synced:
        task.local_edit_fields = [f for f in task.local_edit_fields if f not in synced]

    task.raw_snapshot = parsed.raw
    task.last_external_update_at = max(filter(None, [applied_at, external_at]))
    task.last_payload_hash = parsed.fingerprint
    task.last_event_type = parsed.event_type
    db.session.flush()

    # --- COD side effect ---
    statuses = _completed_statuses()
    completed = parsed.is_completion(statuses) or (
        parsed.job_status is None and task.status in statuses
    )
    cod_entry = _maybe_enqueue(task) if completed else None

    outcome = CONFLICT if conflict else APPLIED
    logger.info(f"Event {event.id} applied to job {task.external_id} ({outcome})")
    return ApplyResult(outcome, task, conflict, cod_entry)


def _record_conflict(task, event, fields, incoming, external_at):
    """Open (or refresh) the single open conflict for a task."""
    conflict = open_conflict_for(task)
    external_values = {f: _to_json(incoming[f]) for f in fields}
    local_values = {f: _to_json(getattr(task, f)) for f in fields}

    if conflict:
        merged_fields = sorted(set(conflict.fields or []) | set(fields))
        conflict.fields = merged_fields
        conflict.external_values = {**(conflict.external_values or {}), **external_values}
        conflict.local_values = {**(conflict.local_values or {}), **local_values}
        conflict.event_id = event.id
        conflict.external_updated_at = external_at
    else:
        conflict = TaskConflict(
            task=task,
            event_id=event.id,
            fields=list(fields),
            local_values=local_values,
            external_values=external_values,
            external_updated_at=external_at,
            status="open",
        )
        db.session.add(conflict)

    logger.warning(
        f"Conflict on job {task.external_id}: local edits to {fields} "
        f"collide with event {event.id}"
    )
    return conflict


def _maybe_enqueue(task):
    """Create the task's COD entry if it is due and does not exist yet."""
    statuses = _completed_statuses()
    if task.status is not None and task.status not in statuses:
        return None
    if task.cod_amount is None or task.cod_amount <= 0:
        return None
    if cod_queue.get_by_task(task.external_id):
        return None

    conflict = open_conflict_for(task)
    if conflict and set(conflict.fields or []) & set(COD_FIELDS):
        logger.info(f"COD enqueue for job {task.external_id} deferred until conflict resolves")
        return None

    if not task.driver_id or not task.merchant_id:
        _fill_parties_from_upstream(task)
    if not task.driver_id:
        raise ValidationError(
            f"Task {task.external_id} completed with COD but has no driver"
        )

    return cod_queue.enqueue(
        driver_id=task.driver_id,
        external_task_id=task.external_id,
        amount=task.cod_amount,
        merchant_id=task.merchant_id,
    )


def _fill_parties_from_upstream(task):
    """Look up driver/merchant for a completed task missing them locally."""
    remote = upstream_client.get_task(task.external_id)
    fleet_id = remote.get("fleet_id")
    customer_id = remote.get("vendor_id") or remote.get("customer_id")
    if not task.driver_id and fleet_id:
        _record_history(task, "driver_id", None, str(fleet_id), "webhook")
        task.driver_id = str(fleet_id)
    if not task.merchant_id and customer_id:
        _record_history(task, "merchant_id", None, str(customer_id), "webhook")
        task.merchant_id = str(customer_id)
    db.session.flush()


# ──────────────────────────────────────────────
# Local edits & conflict resolution
# ──────────────────────────────────────────────

def _coerce_edit(field, value):
    if field in AMOUNT_FIELDS:
        amount = to_amount(value)
        if value is not None and (amount is None or amount < 0):
            raise ValidationError(f"{field} must be a non-negative number")
        return amount
    if field == "notes":
        return _sanitize(value)
    if value is None or value == "":
        return None
    return str(value).strip()


def record_local_edit(external_id, changes, operator_id, push_upstream=False):
    """Apply an operator edit to a cached task.

    With ``push_upstream`` the change is sent to the upstream task first and
    is considered synced; otherwise the edited fields are marked unsynced
    and protected from incoming events until upstream agrees or a conflict
    is resolved.
    """
    task = get_task(external_id)

    unknown = sorted(set(changes) - set(CachedTask.EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(
            f"Fields not editable: {', '.join(unknown)}. "
            f"Must be among: {', '.join(CachedTask.EDITABLE_FIELDS)}"
        )

    coerced = {field: _coerce_edit(field, value) for field, value in changes.items()}
    changed = {f: v for f, v in coerced.items() if getattr(task, f) != v}
    if not changed:
        return task

    if push_upstream:
        upstream_client.update_task(task.external_id, changed)

    for field, value in changed.items():
        _record_history(task, field, getattr(task, field), value, "local_edit",
                        actor_id=operator_id)
        setattr(task, field, value)

    if not push_upstream:
        task.local_edit_fields = sorted(set(task.local_edit_fields or []) | set(changed))
        task.last_local_edit_at = utcnow()
        task.last_local_edit_by = operator_id

    log_audit(
        "task.local_edit",
        entity_type="cached_task",
        entity_id=task.external_id,
        actor_id=operator_id,
        metadata={
            "fields": {f: _to_json(v) for f, v in changed.items()},
            "pushed_upstream": bool(push_upstream),
        },
    )
    db.session.flush()
    return task


def list_conflicts(status="open", limit=100):
    query = TaskConflict.query
    if status:
        query = query.filter_by(status=status)
    return query.order_by(TaskConflict.created_at.asc()).limit(limit).all()


def resolve_conflict(conflict_id, choice, operator_id):
    """Settle a conflict by human choice.

    ``take_external`` overwrites the local values with the latest external
    ones; ``keep_local`` pushes the local values upstream. Either way the
    conflicting fields stop being unsynced and the conflict closes.
    """
    conflict = db.session.get(TaskConflict, conflict_id)
    if conflict is None:
        raise NotFound(f"Conflict {conflict_id} not found")
    if conflict.status != "open":
        raise InvalidTransition(f"Conflict {conflict_id} is already resolved")
    if choice not in TaskConflict.CHOICES:
        raise ValidationError(
            f"Invalid choice '{choice}'. Must be one of: {', '.join(TaskConflict.CHOICES)}"
        )

    task = conflict.task
    fields = list(conflict.fields or [])

    if choice == "take_external":
        for field in fields:
            value = _from_json(field, (conflict.external_values or {}).get(field))
            old = getattr(task, field)
            if old != value:
                _record_history(task, field, old, value, "conflict", actor_id=operator_id)
                setattr(task, field, value)
    else:
        upstream_client.update_task(
            task.external_id, {field: getattr(task, field) for field in fields}
        )

    task.local_edit_fields = [f for f in (task.local_edit_fields or []) if f not in fields]
    conflict.status = "resolved"
    conflict.resolution = choice
    conflict.resolved_by = operator_id
    conflict.resolved_at = utcnow()

    log_audit(
        "task.conflict_resolved",
        entity_type="cached_task",
        entity_id=task.external_id,
        actor_id=operator_id,
        metadata={
            "conflict_id": conflict.id,
            "choice": choice,
            "fields": fields,
            "local_values": conflict.local_values,
            "external_values": conflict.external_values,
        },
    )
    db.session.flush()

    _maybe_enqueue(task)
    return conflict
