"""Retry scheduler — drains pending/failed webhook events with backoff.

A sweep recovers events stuck in ``processing``, then walks the oldest
retryable events (bounded batch) and processes those whose backoff has
elapsed. Events at the retry ceiling are dead-lettered: they stay
``failed`` until an operator calls ``event_store.reset_for_retry``.

Runs from the ``flask process-webhooks`` cron command, the
``flask run-scheduler`` loop, or the in-process ``RetryScheduler`` thread
when WEBHOOK_SCHEDULER_ENABLED is set. Settlement runs on request threads,
so a slow settlement never delays a sweep and vice versa.
"""

import logging
import threading

from flask import current_app

from codledger.extensions import db
from codledger.services import event_store, task_reconciler
from codledger.utils import as_utc, utcnow

logger = logging.getLogger(__name__)

PROCESSED = "processed"
FAILED = "failed"
DEAD_LETTERED = "dead_lettered"
SKIPPED = "skipped"


def backoff_seconds(retry_count, base=60, cap=3600):
    """Delay before the next attempt: ``base * 2**retry_count``, capped."""
    return min(base * (2 ** max(retry_count, 0)), cap)


def is_due(event, now, base=60, cap=3600):
    if event.status == "pending" or event.last_retry_at is None:
        return True
    elapsed = (now - as_utc(event.last_retry_at)).total_seconds()
    return elapsed >= backoff_seconds(event.retry_count or 0, base, cap)


def process_event(event_id, max_retries=None):
    """Claim and apply one event.

    Returns PROCESSED, FAILED, DEAD_LETTERED, or SKIPPED (another worker
    holds the event, or it is already processed).
    """
    if max_retries is None:
        max_retries = current_app.config["WEBHOOK_MAX_RETRIES"]

    if not event_store.mark_processing(event_id):
        logger.info(f"Webhook event {event_id} not claimable, skipping")
        return SKIPPED

    try:
        event = event_store.get_event(event_id)
        result = task_reconciler.apply(event)
        event_store.mark_processed(event_id)
    except Exception as e:
        db.session.rollback()
        event = event_store.mark_failed(event_id, f"{type(e).__name__}: {e}")
        if event.retry_count >= max_retries:
            logger.error(
                f"Webhook event {event_id} dead-lettered after {event.retry_count} "
                f"attempts: {event.error_message}"
            )
            return DEAD_LETTERED
        logger.warning(
            f"Webhook event {event_id} failed (attempt {event.retry_count}/{max_retries}): {e}"
        )
        return FAILED

    logger.info(f"Webhook event {event_id} processed ({result.outcome})")
    return PROCESSED


def run_sweep(now=None):
    """One scheduler pass. Returns a summary dict of counts."""
    cfg = current_app.config
    max_retries = cfg["WEBHOOK_MAX_RETRIES"]
    base = cfg["WEBHOOK_RETRY_BASE_SECONDS"]
    cap = cfg["WEBHOOK_RETRY_MAX_SECONDS"]

    summary = {
        PROCESSED: 0,
        FAILED: 0,
        SKIPPED: 0,
        DEAD_LETTERED: 0,
        "recovered": event_store.recover_stale(cfg["WEBHOOK_PROCESSING_TIMEOUT_SECONDS"]),
    }

    now = now or utcnow()
    events = event_store.list_pending(max_retries, limit=cfg["WEBHOOK_BATCH_SIZE"])
    for event in events:
        if not is_due(event, now, base, cap):
            summary[SKIPPED] += 1
            continue
        summary[process_event(event.id, max_retries)] += 1

    if events:
        logger.info(f"Webhook sweep: {summary}")
    return summary


def dispatch_async(app, event_id):
    """Process a freshly ingested event on a background thread."""

    def _run():
        with app.app_context():
            try:
                process_event(event_id)
            except Exception as e:
                logger.error(f"On-receipt processing of event {event_id} crashed: {e}")
            finally:
                db.session.remove()

    thread = threading.Thread(target=_run, name=f"webhook-{event_id[:8]}")
    thread.daemon = True
    thread.start()
    return thread


class RetryScheduler:
    """Background sweep loop on a daemon thread."""

    def __init__(self, app, interval=None):
        self.app = app
        self.interval = interval or app.config["WEBHOOK_SWEEP_INTERVAL_SECONDS"]
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="webhook-scheduler")
        self._thread.daemon = True
        self._thread.start()
        logger.info(f"Webhook retry scheduler started (every {self.interval}s)")

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)

    def run_once(self):
        with self.app.app_context():
            try:
                return run_sweep()
            except Exception as e:
                db.session.rollback()
                logger.error(f"Webhook sweep crashed: {e}")
                return None
            finally:
                db.session.remove()

    def _loop(self):
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)
