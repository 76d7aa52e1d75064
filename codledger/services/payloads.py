"""Task event payloads — normalising the upstream webhook body.

The upstream platform posts loosely-shaped JSON. ``TaskEvent`` is the typed
projection the rest of the system works with: the resolved event type, the
external task id, the known task fields that were actually present, and
the raw payload kept verbatim for replay/audit. Unknown fields are never
dropped; they stay in ``raw``.
"""

import hashlib
import json
from decimal import Decimal, InvalidOperation

from codledger.errors import WebhookPayloadError
from codledger.utils import parse_timestamp, to_amount

EVENT_TYPE_ALIASES = {
    "task_created": "task_created",
    "task_updated": "task_updated",
    "task_status_changed": "task_updated",
    "task_assigned": "task_assigned",
    "task_started": "task_started",
    "task_completed": "task_completed",
    "task_cancelled": "task_cancelled",
    "task_canceled": "task_cancelled",
}

# Upstream job_status codes
JOB_STATUS_ASSIGNED = 0
JOB_STATUS_STARTED = 1
JOB_STATUS_SUCCESSFUL = 2
JOB_STATUS_FAILED = 3
JOB_STATUS_IN_PROGRESS = 4
JOB_STATUS_UNASSIGNED = 6
JOB_STATUS_ACCEPTED = 7
JOB_STATUS_DECLINED = 8
JOB_STATUS_CANCELLED = 9
JOB_STATUS_DELETED = 10

STATUS_EVENT_TYPES = {
    JOB_STATUS_ASSIGNED: "task_assigned",
    JOB_STATUS_ACCEPTED: "task_assigned",
    JOB_STATUS_STARTED: "task_started",
    JOB_STATUS_IN_PROGRESS: "task_started",
    JOB_STATUS_SUCCESSFUL: "task_completed",
    JOB_STATUS_CANCELLED: "task_cancelled",
    JOB_STATUS_DELETED: "task_cancelled",
    JOB_STATUS_UNASSIGNED: "task_created",
}

TASK_ID_KEYS = ("job_id", "order_id", "task_id")
TIMESTAMP_KEYS = ("updated_at", "job_update_datetime", "last_updated", "completed_datetime")
TEMPLATE_KEYS = ("template_fields", "custom_fields", "templateFields", "customFields")
COD_TEMPLATE_LABEL = "cod_amount"


def _first(payload, keys):
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _template_value(payload, label):
    """Look up a template field in either upstream shape: a mapping, or a
    list of ``{"label": ..., "data": ...}`` objects."""
    for key in TEMPLATE_KEYS:
        fields = payload.get(key)
        if isinstance(fields, dict):
            value = fields.get(label)
            if value not in (None, ""):
                return value
        elif isinstance(fields, list):
            for field in fields:
                if isinstance(field, dict) and field.get("label") == label:
                    value = field.get("data")
                    if value not in (None, ""):
                        return value
    return None


def _as_id(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _as_status(value):
    """Integral job_status (``2``, ``2.0``, ``"2"``, ``"2.0"``) as an int."""
    if isinstance(value, bool):
        raise WebhookPayloadError("job_status must be a number")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise WebhookPayloadError("job_status must be a number")
    if not number.is_finite() or number != number.to_integral_value():
        raise WebhookPayloadError("job_status must be a whole number")
    return int(number)


def resolve_event_type(raw_type, job_status):
    if isinstance(raw_type, str) and raw_type.strip():
        return EVENT_TYPE_ALIASES.get(raw_type.strip().lower(), "unknown")
    if job_status is not None:
        return STATUS_EVENT_TYPES.get(job_status, "task_updated")
    return "unknown"


def payload_fingerprint(payload):
    """Stable SHA-256 over the canonical JSON form of a payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class TaskEvent:
    """Normalised view of one task notification."""

    def __init__(self, event_type, external_task_id, job_status, fields,
                 updated_at, raw):
        self.event_type = event_type
        self.external_task_id = external_task_id
        self.job_status = job_status
        self.fields = fields  # known editable fields present in the payload
        self.updated_at = updated_at  # None when the payload carries no timestamp
        self.raw = raw

    @classmethod
    def from_payload(cls, payload):
        """Build a TaskEvent from a decoded JSON body.

        Raises WebhookPayloadError on structural problems (not an object,
        missing task id, non-integral job_status).
        """
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Webhook body must be a JSON object")

        external_task_id = _as_id(_first(payload, TASK_ID_KEYS))
        if external_task_id is None:
            raise WebhookPayloadError("Missing required field: job_id")
        if len(external_task_id) > 64:
            raise WebhookPayloadError("job_id is too long")

        job_status = payload.get("job_status")
        if job_status is not None and job_status != "":
            job_status = _as_status(job_status)
        else:
            job_status = None

        raw_type = payload.get("event_type") or payload.get("type")
        if raw_type is not None and not isinstance(raw_type, str):
            raise WebhookPayloadError("event_type must be a string")
        event_type = resolve_event_type(raw_type, job_status)

        return cls(
            event_type=event_type,
            external_task_id=external_task_id,
            job_status=job_status,
            fields=cls._known_fields(payload),
            updated_at=parse_timestamp(_first(payload, TIMESTAMP_KEYS)),
            raw=payload,
        )

    @staticmethod
    def _known_fields(payload):
        fields = {}

        cod = _first(payload, ("cod_amount", "cod"))
        if cod is None:
            cod = _template_value(payload, COD_TEMPLATE_LABEL)
        if cod is not None:
            amount = to_amount(cod)
            if amount is not None:
                fields["cod_amount"] = amount

        fee = _first(payload, ("order_fees", "order_payment"))
        if fee is not None:
            amount = to_amount(fee)
            if amount is not None:
                fields["fee_amount"] = amount

        driver_id = _as_id(payload.get("fleet_id"))
        if driver_id is not None:
            fields["driver_id"] = driver_id

        merchant_id = _as_id(_first(payload, ("vendor_id", "customer_id")))
        if merchant_id is not None:
            fields["merchant_id"] = merchant_id

        notes = _first(payload, ("notes", "job_description"))
        if notes is not None:
            fields["notes"] = str(notes)

        return fields

    @property
    def fingerprint(self):
        return payload_fingerprint(self.raw)

    def is_completion(self, completed_statuses):
        if self.job_status is not None:
            return self.job_status in completed_statuses
        return self.event_type == "task_completed"

    def __repr__(self):
        return f"<TaskEvent {self.event_type} job={self.external_task_id}>"
