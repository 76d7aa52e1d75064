"""Settlement engine — exactly-once, oldest-first settlement of COD entries.

Settling one entry is a two-sided credit against the upstream platform:

    created ──> driver_credited ──> merchant_credited ──> complete
       │              │
       v              v
  driver_credit_failed   merchant_credit_failed ──(operator)──> merchant_credited

Each step is committed before the next external call, so the
"driver credited, merchant not" window is always durable and visible
(``list_needs_reconciliation``) rather than rolled back. An attempt left
in ``driver_credited`` longer than ``SETTLEMENT_STUCK_SECONDS`` (the
process died between the two credits) is treated like a merchant credit
failure. Rolling back a
wallet credit is itself an upstream call that can fail, so nothing here
ever attempts it.

Concurrent settle calls for the same driver are serialised by a bounded
in-process lock table; across processes the conditional update in
``cod_queue.mark_settled`` and the open-attempt checks guard the entry.
"""

import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

from flask import current_app

from codledger.errors import (
    AmountMismatch,
    DriverCreditFailed,
    InvalidTransition,
    MerchantCreditFailed,
    NeedsReconciliation,
    NotFound,
    OutOfOrderSettlement,
    SettlementInProgress,
    UpstreamError,
    ValidationError,
)
from codledger.extensions import db
from codledger.models.cod import SettlementAttempt
from codledger.services import cod_queue, upstream_client
from codledger.services.audit_service import log_audit
from codledger.utils import amount_to_json, as_utc, to_amount, utcnow

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
RESOLVE_ACTIONS = ["retry_merchant", "mark_merchant_credited"]


# ──────────────────────────────────────────────
# Per-driver lock table
# ──────────────────────────────────────────────

class DriverLockTable:
    """Bounded map of driver id -> lock.

    When the table is full, the least recently used lock that nobody holds
    or waits on is evicted. Locks in use are never evicted, so the table
    can briefly exceed ``max_size`` under heavy contention.
    """

    def __init__(self, max_size=1024):
        self.max_size = max_size
        self._locks = OrderedDict()
        self._users = {}
        self._guard = threading.Lock()

    def __len__(self):
        return len(self._locks)

    @contextmanager
    def hold(self, driver_id):
        with self._guard:
            lock = self._locks.get(driver_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[driver_id] = lock
            else:
                self._locks.move_to_end(driver_id)
            self._users[driver_id] = self._users.get(driver_id, 0) + 1
            self._evict()

        try:
            with lock:
                yield
        finally:
            with self._guard:
                remaining = self._users[driver_id] - 1
                if remaining:
                    self._users[driver_id] = remaining
                else:
                    del self._users[driver_id]

    def _evict(self):
        while len(self._locks) > self.max_size:
            idle = next((key for key in self._locks if key not in self._users), None)
            if idle is None:
                return
            del self._locks[idle]


lock_table = DriverLockTable()


def configure_lock_table(max_size):
    lock_table.max_size = max_size


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _transition(attempt, new_state, error_message=None):
    if not attempt.can_transition_to(new_state):
        raise InvalidTransition(
            f"Settlement attempt {attempt.id} cannot go from '{attempt.state}' to '{new_state}'"
        )
    attempt.state = new_state
    if error_message is not None:
        attempt.error_message = error_message[:2000]


def _audit_context(attempt):
    return {
        "attempt_id": attempt.id,
        "entry_id": attempt.entry_id,
        "driver_id": attempt.driver_id,
        "merchant_id": attempt.merchant_id,
        "amount": amount_to_json(attempt.amount),
        "payment_method": attempt.payment_method,
    }


def _description(entry):
    return f"COD settlement {entry.external_task_id or entry.id}"


def _stuck_cutoff():
    seconds = current_app.config.get("SETTLEMENT_STUCK_SECONDS", 900)
    return utcnow() - timedelta(seconds=seconds)


def _is_stuck(attempt, cutoff=None):
    """True for a driver_credited attempt whose merchant step never finished."""
    if attempt.state != SettlementAttempt.DRIVER_CREDITED:
        return False
    credited_at = as_utc(attempt.driver_credited_at or attempt.created_at)
    return credited_at < (cutoff or _stuck_cutoff())


def _awaits_reconciliation(attempt, cutoff=None):
    return (
        attempt.state == SettlementAttempt.MERCHANT_CREDIT_FAILED
        or _is_stuck(attempt, cutoff)
    )


def _guard_open_attempts(entry):
    """Reject an entry with an unresolved partial failure or an attempt in flight."""
    unresolved = entry.attempts.filter_by(
        state=SettlementAttempt.MERCHANT_CREDIT_FAILED
    ).first()
    if unresolved:
        raise NeedsReconciliation(
            f"COD entry {entry.id} has an unresolved merchant credit failure",
            entry_id=entry.id,
            attempt_id=unresolved.id,
        )

    in_flight = entry.attempts.filter(
        SettlementAttempt.state.in_(SettlementAttempt.IN_FLIGHT)
    ).first()
    if in_flight and _is_stuck(in_flight):
        raise NeedsReconciliation(
            f"COD entry {entry.id} has a settlement stuck after the driver credit",
            entry_id=entry.id,
            attempt_id=in_flight.id,
        )
    if in_flight:
        raise SettlementInProgress(
            f"COD entry {entry.id} already has a settlement in progress",
            entry_id=entry.id,
            attempt_id=in_flight.id,
        )


def _check_paid_amount(entry, paid_amount):
    paid = to_amount(paid_amount)
    if paid is None or abs(paid - entry.amount) > AMOUNT_TOLERANCE:
        raise AmountMismatch(
            f"Paid amount {paid_amount} does not match COD amount {entry.amount}",
            entry_id=entry.id,
            expected=amount_to_json(entry.amount),
            paid=amount_to_json(paid) if paid is not None else paid_amount,
        )


# ──────────────────────────────────────────────
# Settlement
# ──────────────────────────────────────────────

def settle(driver_id, entry_id, payment_method, operator_id,
           allow_out_of_order=False, reason=None, paid_amount=None):
    """Settle one COD entry for a driver.

    Returns the completed SettlementAttempt. Raises:
      NotFound / InvalidTransition   unknown entry, or already settled
      OutOfOrderSettlement           an older pending entry exists (no override)
      NeedsReconciliation            a previous attempt is partially failed
      SettlementInProgress           another attempt holds the entry
      AmountMismatch                 paid_amount differs from the entry
      DriverCreditFailed             entry untouched, safe to retry
      MerchantCreditFailed           driver credited; needs reconciliation
    """
    if not driver_id:
        raise ValidationError("driverId is required")
    if not payment_method:
        raise ValidationError("paymentMethod is required")

    driver_id = str(driver_id)
    with lock_table.hold(driver_id):
        return _settle_locked(
            driver_id, entry_id, payment_method, operator_id,
            allow_out_of_order, reason, paid_amount,
        )


def _settle_locked(driver_id, entry_id, payment_method, operator_id,
                   allow_out_of_order, reason, paid_amount):
    entry = cod_queue.get_entry(entry_id)
    if entry.driver_id != driver_id:
        raise NotFound(f"COD entry {entry_id} not found for driver {driver_id}")
    if entry.status == "settled":
        raise InvalidTransition(
            f"COD entry {entry.id} is already settled", entry_id=entry.id
        )

    _guard_open_attempts(entry)

    oldest = cod_queue.oldest_pending(driver_id)
    out_of_order = oldest is not None and oldest.id != entry.id
    if out_of_order and not allow_out_of_order:
        raise OutOfOrderSettlement(
            f"COD entry {entry.id} is not the oldest pending entry for driver {driver_id}",
            entry_id=entry.id,
            oldest_entry_id=oldest.id,
        )

    if paid_amount is not None:
        _check_paid_amount(entry, paid_amount)
    if not entry.merchant_id:
        raise ValidationError(
            f"COD entry {entry.id} has no merchant to credit", entry_id=entry.id
        )

    attempt = SettlementAttempt(
        entry=entry,
        driver_id=driver_id,
        merchant_id=entry.merchant_id,
        amount=entry.amount,
        state=SettlementAttempt.CREATED,
        payment_method=payment_method,
        operator_id=operator_id,
        out_of_order=out_of_order,
        override_reason=reason if out_of_order else None,
    )
    db.session.add(attempt)
    db.session.flush()

    if out_of_order:
        log_audit(
            "cod.settled_out_of_order",
            entity_type="cod_entry",
            entity_id=entry.id,
            actor_id=operator_id,
            metadata={
                **_audit_context(attempt),
                "oldest_entry_id": oldest.id,
                "reason": reason,
            },
        )
        logger.warning(
            f"Out-of-order settlement of {entry.id} for driver {driver_id} "
            f"by {operator_id} (oldest pending: {oldest.id})"
        )
    log_audit(
        "cod.settlement_started",
        entity_type="cod_entry",
        entity_id=entry.id,
        actor_id=operator_id,
        metadata=_audit_context(attempt),
    )
    db.session.commit()

    # --- Step 1: driver wallet ---
    try:
        upstream_client.credit_driver_wallet(driver_id, entry.amount, _description(entry))
    except UpstreamError as e:
        _transition(attempt, SettlementAttempt.DRIVER_CREDIT_FAILED, error_message=str(e))
        log_audit(
            "cod.driver_credit_failed",
            entity_type="cod_entry",
            entity_id=entry.id,
            actor_id=operator_id,
            metadata={**_audit_context(attempt), "error": str(e)},
        )
        db.session.commit()
        logger.warning(f"Driver credit failed for COD entry {entry.id}: {e}")
        raise DriverCreditFailed(
            f"Driver wallet credit failed: {e.message}",
            entry_id=entry.id,
            attempt_id=attempt.id,
        ) from e

    _transition(attempt, SettlementAttempt.DRIVER_CREDITED)
    attempt.driver_credited_at = utcnow()
    log_audit(
        "cod.driver_credited",
        entity_type="cod_entry",
        entity_id=entry.id,
        actor_id=operator_id,
        metadata=_audit_context(attempt),
    )
    db.session.commit()

    # --- Step 2: merchant wallet ---
    _credit_merchant(
        attempt, entry, operator_id,
        "Driver was credited but merchant wallet credit failed",
    )
    return _complete(attempt, entry, operator_id)


def _credit_merchant(attempt, entry, operator_id, failure):
    """Credit the merchant side of a driver-credited attempt.

    Any failure, expected or not, is recorded as ``merchant_credit_failed``
    before MerchantCreditFailed is raised, so the attempt never stays in
    ``driver_credited``.
    """
    entry_id, attempt_id = entry.id, attempt.id
    try:
        upstream_client.credit_merchant_wallet(
            attempt.merchant_id, attempt.amount, _description(entry)
        )
    except UpstreamError as e:
        _record_merchant_failure(attempt, entry, operator_id, e)
        raise MerchantCreditFailed(
            f"{failure}: {e.message}",
            entry_id=entry_id,
            attempt_id=attempt_id,
            driver_credited=True,
        ) from e
    except Exception as e:
        logger.exception(f"Unexpected error crediting merchant for attempt {attempt_id}")
        # driver_credited is already committed; drop whatever the error left behind
        db.session.rollback()
        _record_merchant_failure(attempt, entry, operator_id, f"{type(e).__name__}: {e}")
        raise MerchantCreditFailed(
            f"{failure}: unexpected {type(e).__name__}",
            entry_id=entry_id,
            attempt_id=attempt_id,
            driver_credited=True,
        ) from e


def _record_merchant_failure(attempt, entry, operator_id, error):
    if attempt.state == SettlementAttempt.MERCHANT_CREDIT_FAILED:
        attempt.error_message = str(error)[:2000]
    else:
        _transition(attempt, SettlementAttempt.MERCHANT_CREDIT_FAILED, error_message=str(error))
    log_audit(
        "cod.merchant_credit_failed",
        entity_type="cod_entry",
        entity_id=entry.id,
        actor_id=operator_id,
        metadata={
            **_audit_context(attempt),
            "driver_credited_at": attempt.driver_credited_at,
            "error": str(error),
        },
    )
    db.session.commit()
    logger.error(
        f"PARTIAL SETTLEMENT: driver {attempt.driver_id} credited {attempt.amount} "
        f"for COD entry {entry.id} but merchant {attempt.merchant_id} was not "
        f"(attempt {attempt.id}): {error}"
    )


def _complete(attempt, entry, settled_by):
    _transition(attempt, SettlementAttempt.MERCHANT_CREDITED)
    attempt.merchant_credited_at = utcnow()
    db.session.flush()

    try:
        cod_queue.mark_settled(entry, settled_by=settled_by, payment_method=attempt.payment_method)
    except InvalidTransition:
        logger.error(
            f"COD entry {entry.id} was settled concurrently after attempt "
            f"{attempt.id} credited both wallets"
        )
        raise

    _transition(attempt, SettlementAttempt.COMPLETE)
    attempt.completed_at = utcnow()
    log_audit(
        "cod.settled",
        entity_type="cod_entry",
        entity_id=entry.id,
        actor_id=settled_by,
        metadata={**_audit_context(attempt), "out_of_order": bool(attempt.out_of_order)},
    )
    db.session.commit()
    logger.info(f"COD entry {entry.id} settled for driver {entry.driver_id} ({attempt.amount})")
    return attempt


def settle_oldest(driver_id, payment_method, operator_id, paid_amount=None):
    """Settle whatever is currently at the head of a driver's queue."""
    oldest = cod_queue.oldest_pending(driver_id)
    if oldest is None:
        raise NotFound(f"No pending COD entries for driver {driver_id}")
    return settle(
        driver_id, oldest.id, payment_method, operator_id, paid_amount=paid_amount
    )


# ──────────────────────────────────────────────
# Partial-failure reconciliation
# ──────────────────────────────────────────────

def get_attempt(attempt_id):
    attempt = db.session.get(SettlementAttempt, attempt_id)
    if attempt is None:
        raise NotFound(f"Settlement attempt {attempt_id} not found")
    return attempt


def list_needs_reconciliation(driver_id=None):
    """Unresolved merchant-credit failures and stuck driver-credited
    attempts, oldest first."""
    query = SettlementAttempt.query.filter(
        SettlementAttempt.state.in_([
            SettlementAttempt.MERCHANT_CREDIT_FAILED,
            SettlementAttempt.DRIVER_CREDITED,
        ])
    )
    if driver_id:
        query = query.filter_by(driver_id=str(driver_id))
    cutoff = _stuck_cutoff()
    return [
        attempt for attempt in query.order_by(SettlementAttempt.created_at.asc()).all()
        if _awaits_reconciliation(attempt, cutoff)
    ]


def stale_partial_failures(hours):
    cutoff = utcnow() - timedelta(hours=hours)
    return [
        attempt for attempt in list_needs_reconciliation()
        if as_utc(attempt.created_at) < cutoff
    ]


def resolve_partial(attempt_id, action, operator_id):
    """Close a ``merchant_credit_failed`` (or stuck ``driver_credited``) attempt.

    ``retry_merchant`` calls the merchant credit again (never the driver
    credit); ``mark_merchant_credited`` records that an operator credited
    the merchant out of band. Either way the entry is then settled.
    """
    if action not in RESOLVE_ACTIONS:
        raise ValidationError(
            f"Invalid action '{action}'. Must be one of: {', '.join(RESOLVE_ACTIONS)}"
        )

    attempt = get_attempt(attempt_id)
    with lock_table.hold(attempt.driver_id):
        db.session.refresh(attempt)
        if not _awaits_reconciliation(attempt):
            raise InvalidTransition(
                f"Settlement attempt {attempt.id} is '{attempt.state}', "
                f"not awaiting reconciliation"
            )
        entry = attempt.entry

        if action == "retry_merchant":
            _credit_merchant(
                attempt, entry, operator_id, "Merchant wallet credit failed again"
            )

        attempt.resolved_by = operator_id
        log_audit(
            "cod.partial_failure_resolved",
            entity_type="cod_entry",
            entity_id=entry.id,
            actor_id=operator_id,
            metadata={**_audit_context(attempt), "action": action},
        )
        return _complete(attempt, entry, operator_id)
