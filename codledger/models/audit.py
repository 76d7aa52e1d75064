"""Audit event model.

Logs every significant action (settlement steps, overrides, conflict
resolutions, manual retries) with enough context to reconcile by hand.
"""

import uuid

from codledger.extensions import db
from codledger.utils import isoformat, utcnow


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    actor_id = db.Column(
        db.String(64), nullable=True
    )  # user id, "api" for the bearer key, None for system actions
    action = db.Column(db.String(255), nullable=False, index=True)  # e.g. "cod.settled"
    entity_type = db.Column(db.String(64), nullable=True)  # e.g. "cod_queue"
    entity_id = db.Column(db.String(64), nullable=True, index=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metadata": self.metadata_ or {},
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
