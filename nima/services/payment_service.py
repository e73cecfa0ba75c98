# FILE: nima/services/payment_service.py
"""M-Pesa STK push client and webhook helpers for the mobile-money provider."""

import hashlib
import hmac
import logging
import os
import secrets
import string
from typing import Any, Dict, Optional

import httpx

from nima.core import config
from nima.schemas.credits import WebhookEvent

os.makedirs(config.LOG_DIR, exist_ok=True)
payment_logger = logging.getLogger("nima_payments")
if not payment_logger.handlers:
    handler = logging.FileHandler(os.path.join(config.LOG_DIR, "payments.log"))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    payment_logger.setLevel(logging.INFO)
    payment_logger.addHandler(handler)

_MERCHANT_ID_ALPHABET = string.ascii_letters + string.digits

COMPLETED_STATUSES = {"completed", "success", "successful"}
FAILED_STATUSES = {"failed", "failure", "cancelled", "rejected"}


def generate_merchant_transaction_id() -> str:
    return "nima_cr_" + "".join(secrets.choice(_MERCHANT_ID_ALPHABET) for _ in range(16))


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=config.PAYMENT_TIMEOUT_SECONDS)


async def send_stk_push(
    merchant_transaction_id: str,
    amount_minor_units: int,
    phone_number: str,
    narration: str,
) -> Optional[str]:
    """
    Ask the provider to push an M-Pesa prompt to the phone.
    Returns None when the request was accepted, otherwise the failure reason.
    The final outcome always arrives later through the webhook.
    """
    if not config.PAYMENT_API_KEY:
        payment_logger.error("PAYMENT_API_KEY not configured")
        return "Payment service not configured"

    payment_logger.info(
        "Initiating STK push for %s, amount: %s, phone: %s",
        merchant_transaction_id, amount_minor_units, phone_number,
    )
    try:
        async with _client() as client:
            resp = await client.post(
                config.PAYMENT_API_URL,
                json={
                    "merchantTransactionId": merchant_transaction_id,
                    "amount": amount_minor_units,
                    "phoneNumber": phone_number,
                    "narration": narration,
                },
                headers={
                    "Authorization": f"Bearer {config.PAYMENT_API_KEY}",
                    "Idempotency-Key": merchant_transaction_id,
                },
            )
    except httpx.HTTPError as exc:
        payment_logger.error("STK push error for %s: %s", merchant_transaction_id, exc)
        return str(exc) or "Network error"

    if resp.is_success:
        payment_logger.info("STK push accepted for %s: %s", merchant_transaction_id, resp.text[:500])
        return None

    try:
        data = resp.json()
    except ValueError:
        data = {}
    error = data.get("error") if isinstance(data, dict) else None
    reason = (error or {}).get("message") if isinstance(error, dict) else None
    reason = reason or f"HTTP {resp.status_code}"
    payment_logger.error("STK push failed for %s: %s", merchant_transaction_id, reason)
    return reason


def sign_webhook_body(body: bytes, secret: Optional[str] = None) -> str:
    key = (secret if secret is not None else config.PAYMENT_WEBHOOK_SECRET).encode("utf-8")
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """HMAC-SHA256 hex of the raw body. Always true when no secret is configured."""
    secret = secret if secret is not None else config.PAYMENT_WEBHOOK_SECRET
    if not secret:
        return True
    if not signature:
        return False
    expected = sign_webhook_body(body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_webhook(payload: Dict[str, Any]) -> WebhookEvent:
    """
    Normalize the provider callback. Accepts a flat payload or one nested
    under `data`; the outcome comes from the event name or the status field.
    Raises ValueError when no merchant transaction id is present.
    """
    event_type = str(payload.get("event") or payload.get("type") or "").lower()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

    merchant_transaction_id = data.get("merchantTransactionId") or payload.get("merchantTransactionId") or ""
    if not merchant_transaction_id:
        raise ValueError("Missing merchantTransactionId")

    provider_transaction_id = str(data.get("id") or payload.get("id") or "")
    status = str(data.get("status") or payload.get("status") or "").lower()

    if "completed" in event_type or "success" in event_type or status in COMPLETED_STATUSES:
        outcome = "completed"
    elif "failed" in event_type or "failure" in event_type or status in FAILED_STATUSES:
        outcome = "failed"
    else:
        outcome = "unknown"

    reason = data.get("failureReason") or payload.get("failureReason")
    return WebhookEvent(
        merchant_transaction_id=str(merchant_transaction_id),
        provider_transaction_id=provider_transaction_id,
        outcome=outcome,
        failure_reason=str(reason) if reason else None,
        event_type=event_type,
        status=status,
    )
