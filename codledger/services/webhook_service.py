"""Webhook ingress — signature verification and durable capture.

The ingress never processes events inline: it verifies, parses, stores
the event as ``pending`` and acknowledges. Duplicate deliveries are stored
as separate rows; the task reconciler makes their application idempotent.
"""

import hashlib
import hmac
import json
import logging

from flask import current_app

from codledger.errors import InvalidSignature, WebhookPayloadError
from codledger.services import event_store
from codledger.services.payloads import TaskEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def verify_signature(secret, payload, signature_header):
    """Verify an HMAC-SHA256 hex signature over the raw body.

    Accepts the bare hex digest or a ``sha256=`` prefixed one.
    """
    if not secret or not signature_header:
        return False

    provided = signature_header.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]

    mac = hmac.new(secret.encode("utf-8"), msg=payload, digestmod=hashlib.sha256)
    # Constant-time comparison over bytes
    return hmac.compare_digest(
        mac.hexdigest().encode("ascii"),
        provided.lower().encode("utf-8", "replace"),
    )


def ingest(raw_body, signature_header=None):
    """Verify, parse and persist one inbound notification.

    Returns the stored WebhookEvent. Raises InvalidSignature,
    WebhookPayloadError (nothing persisted), or StorageUnavailable.
    """
    secret = current_app.config.get("WEBHOOK_SECRET")
    if secret and not verify_signature(secret, raw_body, signature_header):
        reason = "missing" if not signature_header else "mismatched"
        logger.warning(f"Webhook rejected: {reason} {SIGNATURE_HEADER}")
        raise InvalidSignature(f"Missing or invalid {SIGNATURE_HEADER}")

    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Webhook rejected: body is not valid JSON")
        raise WebhookPayloadError("Body is not valid JSON")

    try:
        parsed = TaskEvent.from_payload(payload)
    except WebhookPayloadError as e:
        logger.warning(f"Webhook rejected: {e.message}")
        raise

    return event_store.create_event(parsed.event_type, parsed.external_task_id, payload)
