"""Audit helpers.

Flushes but does NOT commit — the caller owns the transaction, so an audit
row lands atomically with the state change it describes.
"""

from codledger.extensions import db
from codledger.models.audit import AuditEvent


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def log_audit(action, entity_type=None, entity_id=None, actor_id=None, metadata=None):
    """Record an audit event. Actor is None for system-initiated actions."""
    event = AuditEvent(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        metadata_=_jsonable(metadata or {}),
    )
    db.session.add(event)
    db.session.flush()
    return event
