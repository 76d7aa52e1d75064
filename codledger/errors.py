"""Error taxonomy.

Services raise these; the app-level error handler renders them as
``{"status": "error", "error": <kind>, "message": ...}`` with the class
status code. ``kind`` is the explicit error kind returned to operators.
"""


class LedgerError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message=None, **context):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context = context

    def to_dict(self):
        body = {"status": "error", "error": self.kind, "message": self.message}
        if self.context:
            body["data"] = self.context
        return body


# --- Ingress ---

class WebhookPayloadError(LedgerError):
    kind = "invalid_payload"
    status_code = 400


class InvalidSignature(LedgerError):
    kind = "invalid_signature"
    status_code = 401


class StorageUnavailable(LedgerError):
    kind = "storage_unavailable"
    status_code = 500


# --- Generic ---

class NotFound(LedgerError):
    kind = "not_found"
    status_code = 404


class ValidationError(LedgerError):
    kind = "validation_error"
    status_code = 400


class InvalidTransition(LedgerError):
    kind = "invalid_transition"
    status_code = 409


# --- COD queue / settlement ---

class DuplicateEntry(LedgerError):
    kind = "duplicate_entry"
    status_code = 409


class OutOfOrderSettlement(LedgerError):
    kind = "out_of_order_settlement"
    status_code = 409


class AmountMismatch(LedgerError):
    kind = "amount_mismatch"
    status_code = 400


class SettlementInProgress(LedgerError):
    kind = "settlement_in_progress"
    status_code = 409


class NeedsReconciliation(LedgerError):
    kind = "needs_reconciliation"
    status_code = 409


class DriverCreditFailed(LedgerError):
    kind = "driver_credit_failed"
    status_code = 502


class MerchantCreditFailed(LedgerError):
    kind = "merchant_credit_failed"
    status_code = 502


# --- Collaborators ---

class UpstreamError(LedgerError):
    kind = "upstream_error"
    status_code = 502
