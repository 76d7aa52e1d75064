"""Upstream platform client — the collaborators at the system boundary.

Thin wrappers over the Tookan v2 REST API:
- get_task / update_task: task lookup and update (conflict resolution,
  filling in a missing driver on completion)
- credit_driver_wallet: fleet wallet credit
- credit_merchant_wallet: customer (merchant) wallet payment

Every call is synchronous and independently fallible. Any transport
error, non-2xx response, non-JSON body, or body ``status != 200`` raises
UpstreamError — callers never have to inspect raw responses.
"""

import logging

import requests
from flask import current_app

from codledger.errors import UpstreamError

logger = logging.getLogger(__name__)

# Tookan wallet constants: transaction_type 1 = debit, 2 = credit;
# wallet_type 1 = wallet, 2 = credits.
TRANSACTION_TYPE_CREDIT = 2
WALLET_TYPE_WALLET = 1


def _post(path, payload):
    """POST to the upstream API with the configured key. Returns the parsed body."""
    api_key = current_app.config.get("TOOKAN_API_KEY")
    if not api_key:
        raise UpstreamError("TOOKAN_API_KEY is not configured")

    base_url = current_app.config["TOOKAN_API_BASE_URL"].rstrip("/")
    timeout = current_app.config.get("TOOKAN_API_TIMEOUT", 15)
    url = f"{base_url}/{path.lstrip('/')}"

    try:
        resp = requests.post(
            url,
            json={"api_key": api_key, **payload},
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as e:
        logger.error(f"Upstream call {path} failed: {e}")
        raise UpstreamError(f"Upstream call {path} failed: {e}") from e

    try:
        data = resp.json()
    except ValueError:
        logger.error(f"Upstream call {path} returned non-JSON ({resp.status_code})")
        raise UpstreamError(
            f"Upstream returned non-JSON response: {resp.text[:200]}"
        )

    if not isinstance(data, dict):
        raise UpstreamError(f"Upstream returned unexpected body for {path}")

    if not resp.ok or data.get("status") != 200:
        message = data.get("message") or f"HTTP {resp.status_code}"
        logger.error(f"Upstream call {path} rejected: {message}")
        raise UpstreamError(f"Upstream rejected {path}: {message}", response=data)

    return data


def get_task(job_id):
    """Fetch the current upstream state of a task. Returns the task dict."""
    data = _post("get_job_details", {
        "job_ids": [int(job_id) if str(job_id).isdigit() else job_id],
        "include_task_history": 0,
    })
    tasks = data.get("data") or []
    if not tasks:
        raise UpstreamError(f"Upstream task {job_id} not found")
    return tasks[0]


def update_task(job_id, fields):
    """Push locally-edited fields to the upstream task."""
    payload = {"job_id": str(job_id)}
    custom_fields = []
    if "cod_amount" in fields:
        custom_fields.append({"label": "cod_amount", "data": str(fields["cod_amount"])})
    if "fee_amount" in fields:
        payload["order_payment"] = str(fields["fee_amount"])
    if "notes" in fields:
        payload["job_description"] = fields["notes"] or ""
    if "driver_id" in fields:
        payload["fleet_id"] = fields["driver_id"]
    if "merchant_id" in fields:
        payload["customer_id"] = fields["merchant_id"]
    if custom_fields:
        payload["meta_data"] = custom_fields

    data = _post("edit_task", payload)
    logger.info(f"Pushed local edits for job {job_id}: {sorted(fields)}")
    return data.get("data") or {}


def credit_driver_wallet(driver_id, amount, description):
    """Credit a driver (fleet) wallet. Returns the upstream response data."""
    data = _post("fleet/wallet/create_transaction", {
        "fleet_id": str(driver_id),
        "amount": float(abs(amount)),
        "description": description.strip(),
        "transaction_type": TRANSACTION_TYPE_CREDIT,
        "wallet_type": WALLET_TYPE_WALLET,
    })
    logger.info(f"Driver wallet credited: fleet_id={driver_id} amount={amount}")
    return data.get("data") or {}


def credit_merchant_wallet(merchant_id, amount, description):
    """Credit a merchant (customer) wallet. Returns the upstream response data."""
    data = _post("addCustomerPaymentViaDashboard", {
        "vendor_id": str(merchant_id),
        "amount": float(abs(amount)),
        "description": description.strip(),
    })
    logger.info(f"Merchant wallet credited: vendor_id={merchant_id} amount={amount}")
    return data.get("data") or {}
