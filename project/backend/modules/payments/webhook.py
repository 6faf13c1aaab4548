"""
Idempotent payment webhook handling.

Providers redeliver webhooks; every delivery of a captured payment after the
first resolves to "already_processed" and moves no credits.
"""

from typing import Any, Dict, Union

from shared.errors import AlreadyCreditedError
from shared.logging import get_logger
from shared.models import utc_now
from shared.store import Store
from modules.credit_ledger import CreditLedger
from modules.payments.signature import parse_event, verify_signature

logger = get_logger("payments.webhook")


class PaymentWebhookHandler:
    """Handles Razorpay payment.captured and payment.failed events."""

    def __init__(self, store: Store, ledger: CreditLedger, webhook_secret: str):
        self.store = store
        self.ledger = ledger
        self.webhook_secret = webhook_secret

    async def handle(self, raw_body: Union[str, bytes], signature: str) -> Dict[str, Any]:
        """
        Verify and apply one webhook delivery.

        Returns:
            {"status": "credited" | "already_processed" | "order_not_found" |
             "failed" | "ignored", ...}

        Raises:
            WebhookSignatureError: If the signature does not verify
        """
        verify_signature(self.webhook_secret, raw_body, signature)
        event = parse_event(raw_body)
        logger.info(
            "Payment webhook received",
            extra={
                "event_type": event.event_type,
                "external_order_id": event.external_order_id,
                "external_payment_id": event.external_payment_id,
            }
        )

        if event.event_type not in ("payment.captured", "payment.failed"):
            return {"status": "ignored", "event_type": event.event_type}

        async with self.store.session() as s:
            order = (
                await s.get_payment_order_by_external_id(event.external_order_id)
                if event.external_order_id else None
            )
        if order is None:
            # Acknowledged so the provider stops redelivering
            logger.warning("Order not found for webhook", extra={"external_order_id": event.external_order_id})
            return {"status": "order_not_found"}

        if event.event_type == "payment.failed":
            return await self._mark_failed(order.id, event.external_payment_id, event.failure_reason)

        if order.credit_transaction_id:
            logger.info("Order already credited", extra={"order_id": order.id})
            return {"status": "already_processed", "credit_transaction_id": order.credit_transaction_id}
        try:
            txn = await self.ledger.credit_payment_order(order.id, external_payment_id=event.external_payment_id)
        except AlreadyCreditedError as e:
            logger.info("Concurrent delivery already credited order", extra={"order_id": order.id})
            credit_transaction_id = e.credit_transaction_id
            if credit_transaction_id is None:
                async with self.store.session() as s:
                    credit_transaction_id = (await s.get_payment_order(order.id)).credit_transaction_id
            return {"status": "already_processed", "credit_transaction_id": credit_transaction_id}
        return {"status": "credited", "credit_transaction_id": txn.id, "credits": txn.amount}

    async def _mark_failed(self, order_id: str, payment_id: str, reason: str) -> Dict[str, Any]:
        async with self.store.session() as s:
            updated = await s.update_payment_order(
                order_id,
                {
                    "status": "failed",
                    "external_payment_id": payment_id,
                    "failure_reason": reason or "Payment failed",
                    "updated_at": utc_now(),
                },
                require_uncredited=True,
            )
        if not updated:
            return {"status": "already_processed"}
        logger.warning("Payment failed", extra={"order_id": order_id, "reason": reason})
        return {"status": "failed"}
