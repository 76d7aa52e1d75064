"""COD queue — per-driver FIFO ledger of pending cash.

Entries are created when a delivery completes with a nonzero COD amount
(or manually by an operator) and are consumed oldest-first by the
settlement service. This module is the only writer of
``CodQueueEntry.status``; ``mark_settled`` is called exclusively by the
settlement service.

Functions flush but do NOT commit — the caller commits.
"""

import logging

from sqlalchemy.exc import IntegrityError

from codledger.errors import DuplicateEntry, InvalidTransition, NotFound, ValidationError
from codledger.extensions import db
from codledger.models.cod import CodQueueEntry
from codledger.utils import to_amount, utcnow

logger = logging.getLogger(__name__)


def _fifo_order(query):
    return query.order_by(CodQueueEntry.created_at.asc(), CodQueueEntry.id.asc())


def get_entry(entry_id):
    entry = db.session.get(CodQueueEntry, entry_id)
    if entry is None:
        raise NotFound(f"COD entry {entry_id} not found")
    return entry


def get_by_task(external_task_id):
    return CodQueueEntry.query.filter_by(
        external_task_id=str(external_task_id)
    ).first()


def enqueue(driver_id, external_task_id, amount, merchant_id=None,
            note=None, created_at=None):
    """Append a pending entry to a driver's queue.

    Raises DuplicateEntry if an entry already exists for external_task_id,
    ValidationError if the amount is not positive or the driver is missing.
    """
    amount = to_amount(amount)
    if amount is None or amount <= 0:
        raise ValidationError("COD amount must be greater than zero")
    if not driver_id:
        raise ValidationError("driver_id is required")

    if external_task_id is not None:
        external_task_id = str(external_task_id)
        existing = get_by_task(external_task_id)
        if existing:
            raise DuplicateEntry(
                f"COD entry already exists for task {external_task_id}",
                entry_id=existing.id,
            )

    entry = CodQueueEntry(
        driver_id=str(driver_id),
        external_task_id=external_task_id,
        merchant_id=str(merchant_id) if merchant_id else None,
        amount=amount,
        status="pending",
        note=note,
        created_at=created_at or utcnow(),
    )
    db.session.add(entry)
    try:
        db.session.flush()
    except IntegrityError as e:
        # Lost a race on the unique external_task_id; the session is unusable.
        db.session.rollback()
        raise DuplicateEntry(
            f"COD entry already exists for task {external_task_id}"
        ) from e

    logger.info(
        f"COD enqueued: entry={entry.id} driver={entry.driver_id} "
        f"task={external_task_id} amount={amount}"
    )
    return entry


def add_manual_entry(driver_id, amount, merchant_id, note=None, created_at=None):
    """Operator-created entry with no upstream task behind it."""
    if not merchant_id:
        raise ValidationError("merchant_id is required for manual entries")
    return enqueue(
        driver_id=driver_id,
        external_task_id=None,
        amount=amount,
        merchant_id=merchant_id,
        note=note,
        created_at=created_at,
    )


def oldest_pending(driver_id):
    """The single oldest pending entry for a driver, or None."""
    return _fifo_order(
        CodQueueEntry.query.filter_by(driver_id=str(driver_id), status="pending")
    ).first()


def list_pending(driver_id):
    """The driver's full pending queue, oldest first."""
    return _fifo_order(
        CodQueueEntry.query.filter_by(driver_id=str(driver_id), status="pending")
    ).all()


def list_queue(driver_id, status=None):
    """All of a driver's entries (optionally filtered), oldest first."""
    query = CodQueueEntry.query.filter_by(driver_id=str(driver_id))
    if status:
        if status not in CodQueueEntry.STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(CodQueueEntry.STATUSES)}"
            )
        query = query.filter_by(status=status)
    return _fifo_order(query).all()


def pending_total(driver_id):
    total = (
        db.session.query(db.func.coalesce(db.func.sum(CodQueueEntry.amount), 0))
        .filter(
            CodQueueEntry.driver_id == str(driver_id),
            CodQueueEntry.status == "pending",
        )
        .scalar()
    )
    return to_amount(total)


def mark_settled(entry, settled_by, payment_method):
    """``pending -> settled`` as a conditional update.

    Raises InvalidTransition if the entry was not pending at write time.
    """
    now = utcnow()
    updated = (
        CodQueueEntry.query
        .filter(CodQueueEntry.id == entry.id, CodQueueEntry.status == "pending")
        .update(
            {
                "status": "settled",
                "settled_at": now,
                "settled_by": settled_by,
                "payment_method": payment_method,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        raise InvalidTransition(f"COD entry {entry.id} is no longer pending")

    db.session.refresh(entry)
    logger.info(f"COD entry {entry.id} settled by {settled_by} via {payment_method}")
    return entry
