"""Event store — durable, idempotent record of inbound webhook events.

Owns the WebhookEvent lifecycle exclusively:

    pending ──> processing ──> processed
       ^            │
       │            v
       └──(reset)── failed ──> processing (retry)

``retry_count`` increments only on a transition into ``failed``. Claims
(``mark_processing``) are conditional UPDATEs so two workers can never
process the same row concurrently.

Each function commits: a webhook event is only acknowledged once durable.
``mark_processed`` commits whatever the reconciler flushed in the same
session, so the task change and the processed flag land together.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from codledger.errors import InvalidTransition, NotFound, StorageUnavailable
from codledger.extensions import db
from codledger.models.webhook_event import WebhookEvent
from codledger.services.audit_service import log_audit
from codledger.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
RETRYABLE_STATUSES = ("pending", "failed")


def create_event(event_type, external_task_id, payload):
    """Persist a new inbound event as ``pending``.

    Always succeeds unless the datastore is unreachable, in which case
    StorageUnavailable is raised (the ingress answers 500 so the upstream
    platform redelivers).
    """
    if event_type not in WebhookEvent.EVENT_TYPES:
        event_type = "unknown"

    event = WebhookEvent(
        event_type=event_type,
        external_task_id=str(external_task_id),
        payload=payload,
        status="pending",
        retry_count=0,
    )
    try:
        db.session.add(event)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to persist webhook event for job {external_task_id}: {e}")
        raise StorageUnavailable("Event store is unavailable") from e

    logger.info(f"Stored webhook event {event.id} ({event_type}) for job {external_task_id}")
    return event


def get_event(event_id):
    event = db.session.get(WebhookEvent, event_id)
    if event is None:
        raise NotFound(f"Webhook event {event_id} not found")
    return event


def mark_processing(event_id):
    """Claim an event for processing.

    Returns True if this caller won the claim, False if the row was not in
    a claimable state (already processing, processed, or claimed by a
    concurrent worker).
    """
    now = utcnow()
    claimed = (
        WebhookEvent.query
        .filter(
            WebhookEvent.id == event_id,
            WebhookEvent.status.in_(RETRYABLE_STATUSES),
        )
        .update(
            {
                "status": "processing",
                "processing_started_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    return claimed == 1


def mark_processed(event_id):
    """Mark an event processed. No-op if it already is."""
    event = get_event(event_id)
    if event.status == "processed":
        return event
    if not event.can_transition_to("processed"):
        raise InvalidTransition(
            f"Cannot mark event {event_id} processed from '{event.status}'"
        )

    event.status = "processed"
    event.processed_at = utcnow()
    event.processing_started_at = None
    event.error_message = None
    db.session.commit()
    return event


def mark_failed(event_id, error_message):
    """Record a failed processing attempt and bump the retry counter."""
    event = get_event(event_id)
    if not event.can_transition_to("failed"):
        raise InvalidTransition(
            f"Cannot mark event {event_id} failed from '{event.status}'"
        )

    event.status = "failed"
    event.retry_count = (event.retry_count or 0) + 1
    event.last_retry_at = utcnow()
    event.processing_started_at = None
    event.error_message = (error_message or "Processing failed")[:2000]
    db.session.commit()
    return event


def list_pending(max_retries, limit=DEFAULT_BATCH_SIZE):
    """Events eligible for (re)processing, oldest first, bounded."""
    return (
        WebhookEvent.query
        .filter(
            WebhookEvent.status.in_(RETRYABLE_STATUSES),
            WebhookEvent.retry_count < max_retries,
        )
        .order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
        .limit(limit)
        .all()
    )


def list_dead_lettered(max_retries, limit=DEFAULT_BATCH_SIZE):
    """Events that exhausted their retry budget and wait for an operator."""
    return (
        WebhookEvent.query
        .filter(
            WebhookEvent.status.in_(RETRYABLE_STATUSES),
            WebhookEvent.retry_count >= max_retries,
        )
        .order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
        .limit(limit)
        .all()
    )


def list_by_status(status, limit=DEFAULT_BATCH_SIZE):
    query = WebhookEvent.query.filter_by(status=status)
    if status == "processed":
        query = query.order_by(WebhookEvent.processed_at.desc())
    else:
        query = query.order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
    return query.limit(limit).all()


def reset_for_retry(event_id, clear_retries=True, actor_id=None):
    """Operator reset: ``failed -> pending``.

    Clearing the retry count (the default) makes a dead-lettered event
    eligible for the scheduler again.
    """
    event = get_event(event_id)
    if event.status != "failed":
        raise InvalidTransition(
            f"Only failed events can be reset (event {event_id} is '{event.status}')"
        )

    previous_retries = event.retry_count
    event.status = "pending"
    if clear_retries:
        event.retry_count = 0
        event.last_retry_at = None

    log_audit(
        "webhook.reset_for_retry",
        entity_type="webhook_event",
        entity_id=event.id,
        actor_id=actor_id,
        metadata={
            "previous_retry_count": previous_retries,
            "cleared_retries": bool(clear_retries),
            "last_error": event.error_message,
        },
    )
    db.session.commit()
    logger.info(f"Webhook event {event.id} reset for retry by {actor_id}")
    return event


def recover_stale(timeout_seconds):
    """Fail events stuck in ``processing`` (worker died mid-flight).

    Returns the number of recovered events.
    """
    cutoff = utcnow() - timedelta(seconds=timeout_seconds)
    stale = (
        WebhookEvent.query
        .filter(
            WebhookEvent.status == "processing",
            WebhookEvent.processing_started_at < cutoff,
        )
        .all()
    )
    for event in stale:
        logger.warning(f"Webhook event {event.id} stuck in processing, marking failed")
        mark_failed(event.id, "Processing timed out")
    return len(stale)


def counts_by_status(max_retries):
    rows = (
        db.session.query(WebhookEvent.status, db.func.count(WebhookEvent.id))
        .group_by(WebhookEvent.status)
        .all()
    )
    counts = {status: 0 for status in WebhookEvent.STATUSES}
    counts.update({status: count for status, count in rows})
    counts["dead_letter"] = (
        WebhookEvent.query
        .filter(
            WebhookEvent.status.in_(RETRYABLE_STATUSES),
            WebhookEvent.retry_count >= max_retries,
        )
        .count()
    )
    return counts
