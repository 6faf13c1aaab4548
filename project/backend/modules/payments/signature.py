"""
Razorpay webhook signature verification and event parsing.
"""

import hashlib
import hmac
import json
from typing import Union

from shared.errors import WebhookSignatureError
from shared.models import WebhookEvent


def compute_signature(secret: str, raw_body: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_body: Union[str, bytes], signature: str) -> None:
    """
    Raises:
        WebhookSignatureError: If the signature is missing or does not match
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    if not hmac.compare_digest(compute_signature(secret, raw_body), signature):
        raise WebhookSignatureError("Invalid webhook signature")


def parse_event(raw_body: Union[str, bytes]) -> WebhookEvent:
    """
    Pull the payment entity out of a Razorpay webhook body.

    Raises:
        WebhookSignatureError: If the (already verified) body is not JSON
    """
    try:
        body = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise WebhookSignatureError(f"Webhook body is not valid JSON: {str(e)}") from e
    entity = ((body.get("payload") or {}).get("payment") or {}).get("entity") or {}
    return WebhookEvent(
        event_type=body.get("event", ""),
        external_order_id=entity.get("order_id"),
        external_payment_id=entity.get("id"),
        amount=entity.get("amount"),
        failure_reason=entity.get("error_description"),
        raw=body,
    )
