"""
Payment order creation and the Razorpay gateway client.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from shared.config import Settings
from shared.errors import ConfigError, PaymentError, ProviderError, ValidationError
from shared.logging import get_logger
from shared.models import PaymentOrder
from shared.store import Store
from modules.generation.providers import GatewayOrder, PaymentGateway

logger = get_logger("payments.orders")

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"

# credits -> price in the order currency
CREDIT_PACKS: Dict[int, Decimal] = {
    100: Decimal("99.00"),
    500: Decimal("449.00"),
    1200: Decimal("999.00"),
}


class RazorpayGateway:
    """PaymentGateway over the Razorpay Orders REST API."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = RAZORPAY_API_BASE, timeout: float = 30.0):
        if not key_id or not key_secret:
            raise ConfigError("Razorpay key id and secret are required")
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["RazorpayGateway"]:
        if not settings.payment_enabled or not settings.razorpay_key_id or not settings.razorpay_key_secret:
            return None
        return cls(settings.razorpay_key_id, settings.razorpay_key_secret)

    @property
    def client_key(self) -> str:
        return self.key_id

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder:
        """
        Create a Razorpay order. Amounts go over the wire in minor units.

        Raises:
            ProviderError: Network failure or 5xx (retryable)
            PaymentError: Razorpay rejected the order
        """
        body = {
            "amount": int(amount * 100),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/orders",
                    json=body,
                    auth=(self.key_id, self.key_secret),
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"Razorpay request failed: {str(e)}", provider="razorpay") from e

        if response.status_code >= 500:
            raise ProviderError(f"Razorpay returned {response.status_code}", provider="razorpay")
        if response.status_code >= 400:
            raise PaymentError(f"Razorpay rejected order: {response.text}")
        data = response.json()
        return GatewayOrder(
            external_order_id=data["id"],
            amount=amount,
            currency=data.get("currency", currency),
            raw=data,
        )


class PaymentService:
    """Creates credit-pack orders, idempotent per user and idempotency key."""

    def __init__(self, store: Store, gateway: PaymentGateway, currency: str = "INR"):
        self.store = store
        self.gateway = gateway
        self.currency = currency

    async def create_order(self, user_id: str, credits: int, idempotency_key: str) -> Dict[str, Any]:
        """
        Returns:
            {"order_id", "external_order_id", "client_key", "amount", "currency", "credits"}

        Raises:
            ValidationError: Unknown credit pack or missing idempotency key
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        if credits not in CREDIT_PACKS:
            raise ValidationError(f"Unknown credit pack: {credits}")

        async with self.store.session() as s:
            existing = await s.get_payment_order_by_idempotency_key(user_id, idempotency_key)
        if existing:
            logger.info("Returning existing order for idempotency key", extra={"order_id": existing.id})
            return self._response(existing)

        amount = CREDIT_PACKS[credits]
        gateway_order = await self.gateway.create_order(
            amount,
            self.currency,
            receipt=idempotency_key[:40],
            notes={"user_id": user_id, "credits": credits},
        )
        order = PaymentOrder(
            user_id=user_id,
            external_order_id=gateway_order.external_order_id,
            credits=credits,
            amount=amount,
            currency=gateway_order.currency,
            idempotency_key=idempotency_key,
        )
        async with self.store.session() as s:
            await s.insert_payment_order(order)
        logger.info(
            "Payment order created",
            extra={"order_id": order.id, "user_id": user_id, "credits": credits, "external_order_id": order.external_order_id}
        )
        return self._response(order)

    def _response(self, order: PaymentOrder) -> Dict[str, Any]:
        return {
            "order_id": order.id,
            "external_order_id": order.external_order_id,
            "client_key": self.gateway.client_key,
            "amount": str(order.amount),
            "currency": order.currency,
            "credits": order.credits,
        }
