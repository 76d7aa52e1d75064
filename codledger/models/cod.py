"""COD models.

- CodQueueEntry: one pending cash amount a driver owes, settled strictly
  oldest-first per driver. ``external_task_id`` is unique so a replayed
  completion event can never enqueue twice; manual entries leave it NULL.
- SettlementAttempt: persisted state machine for the two-sided wallet
  credit behind one settlement. A ``merchant_credit_failed`` attempt is the
  "driver credited, merchant not" window and stays open until an operator
  resolves it.
"""

import uuid

from codledger.extensions import db
from codledger.utils import amount_to_json, isoformat, utcnow


class CodQueueEntry(db.Model):
    __tablename__ = "cod_queue"

    STATUSES = ["pending", "settled"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    driver_id = db.Column(db.String(64), nullable=False, index=True)  # fleet_id
    external_task_id = db.Column(
        db.String(64), unique=True, nullable=True
    )  # NULL for manual entries
    merchant_id = db.Column(db.String(64), nullable=True)  # vendor_id to credit
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_by = db.Column(db.String(64), nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # --- Relationships ---
    attempts = db.relationship(
        "SettlementAttempt", back_populates="entry", lazy="dynamic",
        order_by="SettlementAttempt.created_at",
    )

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_cod_queue_amount_positive"),
        db.Index("ix_cod_queue_driver_status_created", "driver_id", "status", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "driver_id": self.driver_id,
            "external_task_id": self.external_task_id,
            "merchant_id": self.merchant_id,
            "amount": amount_to_json(self.amount),
            "status": self.status,
            "note": self.note,
            "created_at": isoformat(self.created_at),
            "settled_at": isoformat(self.settled_at),
            "settled_by": self.settled_by,
            "payment_method": self.payment_method,
        }

    def __repr__(self):
        return f"<CodQueueEntry {self.id} driver={self.driver_id} ({self.status})>"


class SettlementAttempt(db.Model):
    __tablename__ = "settlement_attempts"

    # -- State machine --
    CREATED = "created"
    DRIVER_CREDITED = "driver_credited"
    MERCHANT_CREDITED = "merchant_credited"
    COMPLETE = "complete"
    DRIVER_CREDIT_FAILED = "driver_credit_failed"
    MERCHANT_CREDIT_FAILED = "merchant_credit_failed"

    VALID_TRANSITIONS = {
        CREATED: [DRIVER_CREDITED, DRIVER_CREDIT_FAILED],
        DRIVER_CREDITED: [MERCHANT_CREDITED, MERCHANT_CREDIT_FAILED],
        MERCHANT_CREDIT_FAILED: [MERCHANT_CREDITED],  # operator resolution only
        MERCHANT_CREDITED: [COMPLETE],
        COMPLETE: [],
        DRIVER_CREDIT_FAILED: [],
    }

    # Attempts holding a claim on their entry
    IN_FLIGHT = [CREATED, DRIVER_CREDITED, MERCHANT_CREDITED]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    entry_id = db.Column(
        db.String(36), db.ForeignKey("cod_queue.id"), nullable=False, index=True
    )
    driver_id = db.Column(db.String(64), nullable=False)
    merchant_id = db.Column(db.String(64), nullable=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    state = db.Column(db.String(30), nullable=False, default=CREATED, index=True)
    payment_method = db.Column(db.String(50), nullable=True)
    operator_id = db.Column(db.String(64), nullable=True)
    out_of_order = db.Column(db.Boolean, default=False)
    override_reason = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    driver_credited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    merchant_credited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)  # partial-failure resolver
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # --- Relationships ---
    entry = db.relationship("CodQueueEntry", back_populates="attempts")

    def can_transition_to(self, new_state):
        return new_state in self.VALID_TRANSITIONS.get(self.state, [])

    def to_dict(self):
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "driver_id": self.driver_id,
            "merchant_id": self.merchant_id,
            "amount": amount_to_json(self.amount),
            "state": self.state,
            "payment_method": self.payment_method,
            "operator_id": self.operator_id,
            "out_of_order": bool(self.out_of_order),
            "override_reason": self.override_reason,
            "error_message": self.error_message,
            "driver_credited_at": isoformat(self.driver_credited_at),
            "merchant_credited_at": isoformat(self.merchant_credited_at),
            "completed_at": isoformat(self.completed_at),
            "resolved_by": self.resolved_by,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<SettlementAttempt {self.id} ({self.state})>"
