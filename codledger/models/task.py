"""Cached task models.

- CachedTask: local mirror of an upstream task, written only by the task
  reconciler (and operator edits that it tracks).
- TaskHistory: field-level change log (COD amount, status, local edits).
- TaskConflict: an external update that collided with an unsynced local
  edit, awaiting a human "keep local" / "take external" decision.
"""

import uuid

from codledger.extensions import db
from codledger.utils import amount_to_json, isoformat, utcnow


class CachedTask(db.Model):
    __tablename__ = "cached_tasks"

    # Fields an operator may edit locally; these are the ones a conflict
    # can be raised over.
    EDITABLE_FIELDS = ["cod_amount", "fee_amount", "notes", "driver_id", "merchant_id"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    external_id = db.Column(db.String(64), unique=True, nullable=False)  # upstream job_id
    status = db.Column(db.Integer, nullable=True)  # upstream job_status code
    cod_amount = db.Column(db.Numeric(10, 2), nullable=True)
    fee_amount = db.Column(db.Numeric(10, 2), nullable=True)
    driver_id = db.Column(db.String(64), nullable=True, index=True)  # fleet_id
    merchant_id = db.Column(db.String(64), nullable=True)  # vendor_id
    notes = db.Column(db.Text, nullable=True)
    raw_snapshot = db.Column(db.JSON, default=dict)

    last_external_update_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payload_hash = db.Column(db.String(64), nullable=True)
    last_event_type = db.Column(db.String(50), nullable=True)

    last_local_edit_at = db.Column(db.DateTime(timezone=True), nullable=True)
    local_edit_fields = db.Column(db.JSON, default=list)  # unsynced edited field names
    last_local_edit_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # --- Relationships ---
    history = db.relationship(
        "TaskHistory", back_populates="task", lazy="dynamic",
        order_by="TaskHistory.created_at",
    )
    conflicts = db.relationship(
        "TaskConflict", back_populates="task", lazy="dynamic",
    )

    def field_values(self, fields=None):
        """Comparable snapshot of the editable fields."""
        return {name: getattr(self, name) for name in (fields or self.EDITABLE_FIELDS)}

    def to_dict(self):
        return {
            "id": self.id,
            "external_id": self.external_id,
            "status": self.status,
            "cod_amount": amount_to_json(self.cod_amount),
            "fee_amount": amount_to_json(self.fee_amount),
            "driver_id": self.driver_id,
            "merchant_id": self.merchant_id,
            "notes": self.notes,
            "last_external_update_at": isoformat(self.last_external_update_at),
            "last_local_edit_at": isoformat(self.last_local_edit_at),
            "local_edit_fields": list(self.local_edit_fields or []),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<CachedTask {self.external_id} (status={self.status})>"


class TaskHistory(db.Model):
    __tablename__ = "task_history"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    task_id = db.Column(
        db.String(36), db.ForeignKey("cached_tasks.id"), nullable=False, index=True
    )
    field = db.Column(db.String(64), nullable=False)  # e.g. "cod_amount"
    old_value = db.Column(db.JSON, nullable=True)
    new_value = db.Column(db.JSON, nullable=True)
    source = db.Column(db.String(20), nullable=False)  # webhook | local_edit | conflict
    event_id = db.Column(db.String(36), nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    # --- Relationships ---
    task = db.relationship("CachedTask", back_populates="history")

    def to_dict(self):
        return {
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "source": self.source,
            "event_id": self.event_id,
            "actor_id": self.actor_id,
            "created_at": isoformat(self.created_at),
        }


class TaskConflict(db.Model):
    __tablename__ = "task_conflicts"

    STATUSES = ["open", "resolved"]
    CHOICES = ["keep_local", "take_external"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    task_id = db.Column(
        db.String(36), db.ForeignKey("cached_tasks.id"), nullable=False, index=True
    )
    event_id = db.Column(db.String(36), nullable=True)  # latest colliding event
    fields = db.Column(db.JSON, nullable=False, default=list)
    local_values = db.Column(db.JSON, nullable=False, default=dict)
    external_values = db.Column(db.JSON, nullable=False, default=dict)
    external_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="open", index=True)
    resolution = db.Column(db.String(20), nullable=True)  # one of CHOICES
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # --- Relationships ---
    task = db.relationship("CachedTask", back_populates="conflicts")

    def to_dict(self):
        return {
            "id": self.id,
            "task_external_id": self.task.external_id if self.task else None,
            "event_id": self.event_id,
            "fields": list(self.fields or []),
            "local_values": self.local_values or {},
            "external_values": self.external_values or {},
            "external_updated_at": isoformat(self.external_updated_at),
            "status": self.status,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by,
            "resolved_at": isoformat(self.resolved_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<TaskConflict {self.id} ({self.status})>"
