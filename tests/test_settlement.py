"""Tests for the settlement engine.

Covers:
- Strict oldest-first settlement per driver, with audited override
- Driver credit failure (entry untouched, retry allowed)
- Merchant credit failure (partial state persisted, entry blocked)
- Operator resolution of partial failures
- Unexpected merchant errors and attempts stuck in driver_credited
- Amount, merchant and ownership checks
- /cod/queue/settle, /cod/reconciliation and resolve routes
- The per-driver lock table
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

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
from codledger.models.audit import AuditEvent
from codledger.models.cod import SettlementAttempt
from codledger.services import cod_queue, settlement_service
from codledger.services.settlement_service import DriverLockTable
from codledger.utils import utcnow

DRIVER_CREDIT = "codledger.services.settlement_service.upstream_client.credit_driver_wallet"
MERCHANT_CREDIT = "codledger.services.settlement_service.upstream_client.credit_merchant_wallet"

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entry(task_id, amount, minutes, driver_id="D1", merchant_id="M1"):
    entry = cod_queue.enqueue(
        driver_id, task_id, amount, merchant_id=merchant_id,
        created_at=T0 + timedelta(minutes=minutes),
    )
    db.session.commit()
    return entry


@pytest.fixture
def queue():
    """Driver D1 owes E1 ($50 @ t10) then E2 ($30 @ t20)."""
    return {
        "e1": _entry("E1", "50.00", 10),
        "e2": _entry("E2", "30.00", 20),
    }


def _audit_actions(entity_id):
    return [
        a.action for a in
        AuditEvent.query.filter_by(entity_id=entity_id).order_by(AuditEvent.created_at).all()
    ]


@patch(MERCHANT_CREDIT)
@patch(DRIVER_CREDIT)
class TestFifo:

    def test_newer_entry_rejected_while_older_pending(self, mock_driver, mock_merchant, queue):
        with pytest.raises(OutOfOrderSettlement) as exc:
            settlement_service.settle("D1", queue["e2"].id, "cash", "ops-1")

        assert exc.value.context["oldest_entry_id"] == queue["e1"].id
        mock_driver.assert_not_called()
        assert cod_queue.get_entry(queue["e2"].id).status == "pending"
        assert SettlementAttempt.query.count() == 0

    def test_oldest_first_then_next(self, mock_driver, mock_merchant, queue):
        attempt = settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")

        assert attempt.state == "complete"
        assert cod_queue.get_entry(queue["e1"].id).status == "settled"
        assert cod_queue.oldest_pending("D1").id == queue["e2"].id

        settlement_service.settle("D1", queue["e2"].id, "cash", "ops-1")
        assert cod_queue.oldest_pending("D1") is None

    def test_three_entries_settle_in_creation_order(self, mock_driver, mock_merchant):
        third = _entry("3", 10, 30)
        first = _entry("1", 10, 10)
        second = _entry("2", 10, 20)

        with pytest.raises(OutOfOrderSettlement):
            settlement_service.settle("D1", third.id, "cash", "ops-1")
        settlement_service.settle("D1", first.id, "cash", "ops-1")

        with pytest.raises(OutOfOrderSettlement):
            settlement_service.settle("D1", third.id, "cash", "ops-1")
        settlement_service.settle("D1", second.id, "cash", "ops-1")
        settlement_service.settle("D1", third.id, "cash", "ops-1")

        assert [e.status for e in cod_queue.list_queue("D1")] == ["settled"] * 3

    def test_other_drivers_do_not_block(self, mock_driver, mock_merchant, queue):
        other = _entry("X1", 5, 0, driver_id="D2")
        attempt = settlement_service.settle("D2", other.id, "cash", "ops-1")
        assert attempt.state == "complete"

    def test_override_is_audited(self, mock_driver, mock_merchant, queue):
        attempt = settlement_service.settle(
            "D1", queue["e2"].id, "cash", "ops-1",
            allow_out_of_order=True, reason="driver disputes E1",
        )

        assert attempt.state == "complete"
        assert attempt.out_of_order is True
        assert attempt.override_reason == "driver disputes E1"
        assert cod_queue.oldest_pending("D1").id == queue["e1"].id

        audit = AuditEvent.query.filter_by(action="cod.settled_out_of_order").one()
        assert audit.entity_id == queue["e2"].id
        assert audit.actor_id == "ops-1"
        assert audit.metadata_["oldest_entry_id"] == queue["e1"].id
        assert audit.metadata_["reason"] == "driver disputes E1"

    def test_override_not_flagged_for_oldest(self, mock_driver, mock_merchant, queue):
        attempt = settlement_service.settle(
            "D1", queue["e1"].id, "cash", "ops-1", allow_out_of_order=True,
        )
        assert attempt.out_of_order is False
        assert AuditEvent.query.filter_by(action="cod.settled_out_of_order").count() == 0

    def test_settle_oldest(self, mock_driver, mock_merchant, queue):
        attempt = settlement_service.settle_oldest("D1", "cash", "ops-1")
        assert attempt.entry_id == queue["e1"].id

    def test_settle_oldest_empty_queue(self, mock_driver, mock_merchant):
        with pytest.raises(NotFound):
            settlement_service.settle_oldest("D1", "cash", "ops-1")


@patch(MERCHANT_CREDIT)
@patch(DRIVER_CREDIT)
class TestHappyPath:

    def test_both_wallets_credited(self, mock_driver, mock_merchant, queue):
        entry = queue["e1"]
        attempt = settlement_service.settle("D1", entry.id, "cash", "ops-1")

        mock_driver.assert_called_once()
        assert mock_driver.call_args[0][:2] == ("D1", Decimal("50.00"))
        mock_merchant.assert_called_once()
        assert mock_merchant.call_args[0][:2] == ("M1", Decimal("50.00"))

        assert attempt.driver_credited_at is not None
        assert attempt.merchant_credited_at is not None
        assert attempt.completed_at is not None

        settled = cod_queue.get_entry(entry.id)
        assert settled.settled_by == "ops-1"
        assert settled.payment_method == "cash"

        assert _audit_actions(entry.id) == [
            "cod.settlement_started", "cod.driver_credited", "cod.settled",
        ]

    def test_already_settled(self, mock_driver, mock_merchant, queue):
        settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")
        with pytest.raises(InvalidTransition):
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")
        assert mock_driver.call_count == 1

    def test_wrong_driver_is_not_found(self, mock_driver, mock_merchant, queue):
        with pytest.raises(NotFound):
            settlement_service.settle("D2", queue["e1"].id, "cash", "ops-1")

    def test_paid_amount_must_match(self, mock_driver, mock_merchant, queue):
        with pytest.raises(AmountMismatch) as exc:
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1",
                                      paid_amount="45.00")
        assert exc.value.context["expected"] == 50.0
        mock_driver.assert_not_called()

    def test_paid_amount_within_tolerance(self, mock_driver, mock_merchant, queue):
        attempt = settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1",
                                            paid_amount="49.99")
        assert attempt.state == "complete"

    def test_missing_merchant(self, mock_driver, mock_merchant):
        entry = _entry("NM", 10, 0, merchant_id=None)
        with pytest.raises(ValidationError):
            settlement_service.settle("D1", entry.id, "cash", "ops-1")
        mock_driver.assert_not_called()

    def test_payment_method_required(self, mock_driver, mock_merchant, queue):
        with pytest.raises(ValidationError):
            settlement_service.settle("D1", queue["e1"].id, "", "ops-1")


@patch(MERCHANT_CREDIT)
@patch(DRIVER_CREDIT)
class TestDriverCreditFailure:

    def test_entry_untouched_and_retryable(self, mock_driver, mock_merchant, queue):
        mock_driver.side_effect = UpstreamError("wallet service down")

        with pytest.raises(DriverCreditFailed) as exc:
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")

        mock_merchant.assert_not_called()
        assert cod_queue.get_entry(queue["e1"].id).status == "pending"
        failed = settlement_service.get_attempt(exc.value.context["attempt_id"])
        assert failed.state == "driver_credit_failed"
        assert "wallet service down" in failed.error_message

        mock_driver.side_effect = None
        attempt = settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")
        assert attempt.state == "complete"
        assert attempt.id != failed.id


@patch(MERCHANT_CREDIT)
@patch(DRIVER_CREDIT)
class TestMerchantCreditFailure:

    def _partial(self, mock_merchant, entry):
        mock_merchant.side_effect = UpstreamError("merchant wallet timeout")
        with pytest.raises(MerchantCreditFailed) as exc:
            settlement_service.settle("D1", entry.id, "cash", "ops-1")
        mock_merchant.side_effect = None
        return exc.value

    def test_partial_state_is_persisted(self, mock_driver, mock_merchant, queue):
        error = self._partial(mock_merchant, queue["e1"])

        assert error.context["driver_credited"] is True
        attempt = settlement_service.get_attempt(error.context["attempt_id"])
        assert attempt.state == "merchant_credit_failed"
        assert attempt.driver_credited_at is not None
        assert cod_queue.get_entry(queue["e1"].id).status == "pending"

        assert "cod.driver_credited" in _audit_actions(queue["e1"].id)
        assert "cod.merchant_credit_failed" in _audit_actions(queue["e1"].id)
        assert [a.id for a in settlement_service.list_needs_reconciliation()] == [attempt.id]
        assert settlement_service.list_needs_reconciliation(driver_id="D2") == []

    def test_entry_blocked_until_resolved(self, mock_driver, mock_merchant, queue):
        self._partial(mock_merchant, queue["e1"])

        with pytest.raises(NeedsReconciliation):
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")
        # The driver is never credited twice
        assert mock_driver.call_count == 1

    def test_partial_failure_blocks_fifo(self, mock_driver, mock_merchant, queue):
        self._partial(mock_merchant, queue["e1"])
        with pytest.raises(OutOfOrderSettlement):
            settlement_service.settle("D1", queue["e2"].id, "cash", "ops-1")

    def test_retry_merchant_completes(self, mock_driver, mock_merchant, queue):
        error = self._partial(mock_merchant, queue["e1"])

        attempt = settlement_service.resolve_partial(
            error.context["attempt_id"], "retry_merchant", "ops-2"
        )

        assert attempt.state == "complete"
        assert attempt.resolved_by == "ops-2"
        assert mock_driver.call_count == 1
        assert mock_merchant.call_count == 2
        entry = cod_queue.get_entry(queue["e1"].id)
        assert entry.status == "settled"
        assert entry.settled_by == "ops-2"
        assert settlement_service.list_needs_reconciliation() == []
        assert "cod.partial_failure_resolved" in _audit_actions(entry.id)

    def test_retry_merchant_failing_again(self, mock_driver, mock_merchant, queue):
        error = self._partial(mock_merchant, queue["e1"])
        mock_merchant.side_effect = UpstreamError("still down")

        with pytest.raises(MerchantCreditFailed):
            settlement_service.resolve_partial(
                error.context["attempt_id"], "retry_merchant", "ops-2"
            )

        attempt = settlement_service.get_attempt(error.context["attempt_id"])
        assert attempt.state == "merchant_credit_failed"
        assert "still down" in attempt.error_message
        assert mock_driver.call_count == 1

    def test_mark_merchant_credited(self, mock_driver, mock_merchant, queue):
        error = self._partial(mock_merchant, queue["e1"])

        attempt = settlement_service.resolve_partial(
            error.context["attempt_id"], "mark_merchant_credited", "ops-2"
        )

        assert attempt.state == "complete"
        assert mock_merchant.call_count == 1
        assert cod_queue.oldest_pending("D1").id == queue["e2"].id

    def test_resolve_invalid_action(self, mock_driver, mock_merchant, queue):
        error = self._partial(mock_merchant, queue["e1"])
        with pytest.raises(ValidationError):
            settlement_service.resolve_partial(error.context["attempt_id"], "refund", "ops-2")

    def test_resolve_completed_attempt(self, mock_driver, mock_merchant, queue):
        attempt = settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")
        with pytest.raises(InvalidTransition):
            settlement_service.resolve_partial(attempt.id, "retry_merchant", "ops-2")

    def test_stale_partial_failures(self, mock_driver, mock_merchant, queue):
        error = self._partial(mock_merchant, queue["e1"])
        assert settlement_service.stale_partial_failures(hours=24) == []

        attempt = settlement_service.get_attempt(error.context["attempt_id"])
        attempt.created_at = utcnow() - timedelta(hours=30)
        db.session.commit()

        assert [a.id for a in settlement_service.stale_partial_failures(hours=24)] == [attempt.id]

    def test_unexpected_merchant_error_is_recorded(self, mock_driver, mock_merchant, queue):
        mock_merchant.side_effect = RuntimeError("connection reset")

        with pytest.raises(MerchantCreditFailed) as exc:
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")

        assert exc.value.context["driver_credited"] is True
        attempt = settlement_service.get_attempt(exc.value.context["attempt_id"])
        assert attempt.state == "merchant_credit_failed"
        assert "RuntimeError: connection reset" in attempt.error_message
        assert [a.id for a in settlement_service.list_needs_reconciliation()] == [attempt.id]

        with pytest.raises(NeedsReconciliation):
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")

        mock_merchant.side_effect = None
        resolved = settlement_service.resolve_partial(attempt.id, "retry_merchant", "ops-2")
        assert resolved.state == "complete"
        assert mock_driver.call_count == 1

    def test_unexpected_error_on_retry_is_recorded(self, mock_driver, mock_merchant, queue):
        error = self._partial(mock_merchant, queue["e1"])
        mock_merchant.side_effect = KeyError("wallet")

        with pytest.raises(MerchantCreditFailed):
            settlement_service.resolve_partial(
                error.context["attempt_id"], "retry_merchant", "ops-2"
            )

        attempt = settlement_service.get_attempt(error.context["attempt_id"])
        assert attempt.state == "merchant_credit_failed"
        assert attempt.error_message.startswith("KeyError")


@patch(MERCHANT_CREDIT)
@patch(DRIVER_CREDIT)
class TestStuckDriverCredited:
    """An attempt left in driver_credited when the process died mid-settlement."""

    def _stuck(self, entry, age):
        attempt = SettlementAttempt(
            entry=entry,
            driver_id=entry.driver_id,
            merchant_id=entry.merchant_id,
            amount=entry.amount,
            state=SettlementAttempt.DRIVER_CREDITED,
            payment_method="cash",
            operator_id="ops-1",
            driver_credited_at=utcnow() - age,
        )
        db.session.add(attempt)
        db.session.commit()
        return attempt

    def test_recent_attempt_is_still_in_progress(self, mock_driver, mock_merchant, queue):
        attempt = self._stuck(queue["e1"], timedelta(seconds=5))

        assert settlement_service.list_needs_reconciliation() == []
        with pytest.raises(SettlementInProgress):
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")
        with pytest.raises(InvalidTransition):
            settlement_service.resolve_partial(attempt.id, "retry_merchant", "ops-2")
        mock_driver.assert_not_called()

    def test_stuck_attempt_is_listed(self, mock_driver, mock_merchant, queue):
        attempt = self._stuck(queue["e1"], timedelta(hours=1))

        assert [a.id for a in settlement_service.list_needs_reconciliation()] == [attempt.id]
        assert [a.id for a in settlement_service.list_needs_reconciliation("D1")] == [attempt.id]
        with pytest.raises(NeedsReconciliation) as exc:
            settlement_service.settle("D1", queue["e1"].id, "cash", "ops-1")
        assert exc.value.context["attempt_id"] == attempt.id
        mock_driver.assert_not_called()

    def test_stuck_after_timeout_setting(self, mock_driver, mock_merchant, app, queue,
                                         monkeypatch):
        self._stuck(queue["e1"], timedelta(minutes=2))
        assert settlement_service.list_needs_reconciliation() == []

        monkeypatch.setitem(app.config, "SETTLEMENT_STUCK_SECONDS", 60)
        assert len(settlement_service.list_needs_reconciliation()) == 1

    def test_retry_merchant_completes(self, mock_driver, mock_merchant, queue):
        attempt = self._stuck(queue["e1"], timedelta(hours=1))

        resolved = settlement_service.resolve_partial(attempt.id, "retry_merchant", "ops-2")

        assert resolved.state == "complete"
        assert resolved.resolved_by == "ops-2"
        mock_merchant.assert_called_once()
        mock_driver.assert_not_called()
        assert cod_queue.get_entry(queue["e1"].id).status == "settled"
        assert settlement_service.list_needs_reconciliation() == []

    def test_retry_merchant_failure_moves_to_failed(self, mock_driver, mock_merchant, queue):
        attempt = self._stuck(queue["e1"], timedelta(hours=1))
        mock_merchant.side_effect = UpstreamError("still down")

        with pytest.raises(MerchantCreditFailed):
            settlement_service.resolve_partial(attempt.id, "retry_merchant", "ops-2")

        assert settlement_service.get_attempt(attempt.id).state == "merchant_credit_failed"

    def test_mark_merchant_credited(self, mock_driver, mock_merchant, queue):
        attempt = self._stuck(queue["e1"], timedelta(hours=1))
        resolved = settlement_service.resolve_partial(
            attempt.id, "mark_merchant_credited", "ops-2"
        )
        assert resolved.state == "complete"
        mock_merchant.assert_not_called()

    def test_reconciliation_route_lists_stuck(self, mock_driver, mock_merchant, client,
                                              auth_headers, queue):
        attempt = self._stuck(queue["e1"], timedelta(hours=1))
        resp = client.get("/cod/reconciliation", headers=auth_headers)
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert [a["id"] for a in data] == [attempt.id]
        assert data[0]["state"] == "driver_credited"


@patch(MERCHANT_CREDIT)
@patch(DRIVER_CREDIT)
class TestSettlementRoutes:

    def _settle(self, client, headers, **body):
        payload = {"driverId": "D1", "paymentMethod": "cash"}
        payload.update(body)
        return client.post("/cod/queue/settle", json=payload, headers=headers)

    def test_requires_operator(self, mock_driver, mock_merchant, client):
        assert client.post("/cod/queue/settle", json={}).status_code == 401

    def test_settle(self, mock_driver, mock_merchant, client, auth_headers, queue):
        resp = self._settle(client, auth_headers, entryId=queue["e1"].id, paidAmount=50)
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["entry"]["status"] == "settled"
        assert data["entry"]["settled_by"] == "api"
        assert data["attempt"]["state"] == "complete"

    def test_missing_fields(self, mock_driver, mock_merchant, client, auth_headers):
        resp = client.post("/cod/queue/settle", json={"driverId": "D1"},
                           headers=auth_headers)
        assert resp.status_code == 400
        assert "entryId" in resp.get_json()["message"]

    def test_out_of_order_is_409(self, mock_driver, mock_merchant, client, auth_headers,
                                 queue):
        resp = self._settle(client, auth_headers, entryId=queue["e2"].id)
        assert resp.status_code == 409
        body = resp.get_json()
        assert body["error"] == "out_of_order_settlement"
        assert body["data"]["oldest_entry_id"] == queue["e1"].id

    def test_override_must_be_boolean(self, mock_driver, mock_merchant, client,
                                      auth_headers, queue):
        resp = self._settle(client, auth_headers, entryId=queue["e2"].id, override="yes")
        assert resp.status_code == 400

    def test_override(self, mock_driver, mock_merchant, client, auth_headers, queue):
        resp = self._settle(client, auth_headers, entryId=queue["e2"].id,
                            override=True, reason="disputed")
        assert resp.status_code == 200
        assert resp.get_json()["data"]["attempt"]["out_of_order"] is True

    def test_amount_mismatch_is_400(self, mock_driver, mock_merchant, client,
                                    auth_headers, queue):
        resp = self._settle(client, auth_headers, entryId=queue["e1"].id, paidAmount=10)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "amount_mismatch"

    def test_partial_failure_and_resolution(self, mock_driver, mock_merchant, client,
                                            auth_headers, queue):
        mock_merchant.side_effect = UpstreamError("timeout")
        resp = self._settle(client, auth_headers, entryId=queue["e1"].id)

        assert resp.status_code == 502
        body = resp.get_json()
        assert body["error"] == "merchant_credit_failed"
        attempt_id = body["data"]["attempt_id"]

        listed = client.get("/cod/reconciliation?driverId=D1", headers=auth_headers)
        assert [a["id"] for a in listed.get_json()["data"]] == [attempt_id]

        again = self._settle(client, auth_headers, entryId=queue["e1"].id)
        assert again.status_code == 409
        assert again.get_json()["error"] == "needs_reconciliation"

        mock_merchant.side_effect = None
        resolved = client.post(
            f"/cod/settlements/{attempt_id}/resolve",
            json={"action": "retry_merchant"},
            headers=auth_headers,
        )
        assert resolved.status_code == 200
        assert resolved.get_json()["data"]["entry"]["status"] == "settled"
        assert mock_driver.call_count == 1

    def test_driver_failure_is_502(self, mock_driver, mock_merchant, client,
                                   auth_headers, queue):
        mock_driver.side_effect = UpstreamError("down")
        resp = self._settle(client, auth_headers, entryId=queue["e1"].id)
        assert resp.status_code == 502
        assert resp.get_json()["error"] == "driver_credit_failed"

    def test_resolve_unknown_attempt(self, mock_driver, mock_merchant, client, auth_headers):
        resp = client.post("/cod/settlements/nope/resolve",
                           json={"action": "retry_merchant"}, headers=auth_headers)
        assert resp.status_code == 404


class TestDriverLockTable:

    def test_same_driver_is_serialised(self):
        table = DriverLockTable()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with table.hold("D1"):
                order.append("first-in")
                entered.set()
                release.wait(timeout=5)
                order.append("first-out")

        def second():
            entered.wait(timeout=5)
            with table.hold("D1"):
                order.append("second-in")

        t1 = threading.Thread(target=first)
        t2 = threading.Thread(target=second)
        t1.start()
        t2.start()
        entered.wait(timeout=5)
        t2.join(timeout=0.2)
        assert order == ["first-in"]

        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)
        assert order == ["first-in", "first-out", "second-in"]

    def test_different_drivers_do_not_block(self):
        table = DriverLockTable()
        with table.hold("D1"):
            with table.hold("D2"):
                assert len(table) == 2

    def test_idle_locks_are_evicted(self):
        table = DriverLockTable(max_size=2)
        for driver in ("D1", "D2", "D3", "D4"):
            with table.hold(driver):
                pass
        assert len(table) == 2

    def test_held_locks_are_not_evicted(self):
        table = DriverLockTable(max_size=1)
        with table.hold("D1"):
            with table.hold("D2"):
                assert len(table) == 2
        with table.hold("D3"):
            pass
        assert len(table) == 1
