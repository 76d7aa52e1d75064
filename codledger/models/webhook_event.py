"""Webhook event model (durable inbound event log).

Every task notification from the upstream platform is recorded here as
``pending`` before anything else happens. The retry scheduler drives each
row through ``pending -> processing -> processed | failed``; ``failed``
rows return to ``pending`` only through an explicit operator reset.
Duplicate deliveries are stored as separate rows — idempotence lives in
the task reconciler, not here.
"""

import uuid

from codledger.extensions import db
from codledger.utils import isoformat, utcnow


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    # -- Lifecycle --
    STATUSES = ["pending", "processing", "processed", "failed"]
    VALID_TRANSITIONS = {
        "pending": ["processing"],
        "failed": ["processing", "pending"],
        "processing": ["processed", "failed"],
        "processed": [],
    }

    # -- Known upstream event types --
    EVENT_TYPES = [
        "task_created",
        "task_updated",
        "task_assigned",
        "task_started",
        "task_completed",
        "task_cancelled",
        "unknown",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_type = db.Column(
        db.String(50), nullable=False, default="unknown"
    )  # one of EVENT_TYPES
    external_task_id = db.Column(
        db.String(64), nullable=False, index=True
    )  # upstream job_id
    payload = db.Column(db.JSON, nullable=False, default=dict)  # verbatim body
    status = db.Column(
        db.String(20), nullable=False, default="pending", index=True
    )
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processing_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    # Python-side default keeps microsecond resolution for oldest-first ordering
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def can_transition_to(self, new_status):
        return new_status in self.VALID_TRANSITIONS.get(self.status, [])

    def to_dict(self, include_payload=False):
        data = {
            "id": self.id,
            "event_type": self.event_type,
            "external_task_id": self.external_task_id,
            "status": self.status,
            "retry_count": self.retry_count,
            "last_retry_at": isoformat(self.last_retry_at),
            "processed_at": isoformat(self.processed_at),
            "error_message": self.error_message,
            "created_at": isoformat(self.created_at),
        }
        if include_payload:
            data["payload"] = self.payload
        return data

    def __repr__(self):
        return f"<WebhookEvent {self.id} {self.event_type} ({self.status})>"
