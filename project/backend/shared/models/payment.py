"""
Payment order models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field, field_serializer

from shared.models.common import new_id, utc_now

PaymentOrderStatus = Literal["created", "authorized", "captured", "failed", "refunded"]


class PaymentOrder(BaseModel):
    """A credit-pack purchase; credited exactly once via credit_transaction_id."""

    id: str = Field(default_factory=new_id)
    user_id: str
    provider: str = "razorpay"
    external_order_id: str
    external_payment_id: Optional[str] = None
    credits: int = Field(gt=0)
    amount: Decimal = Field(description="Charged amount in the order currency")
    currency: str = "INR"
    status: PaymentOrderStatus = "created"
    idempotency_key: Optional[str] = None
    credit_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_serializer("amount")
    def serialize_decimal(self, value: Decimal) -> str:
        """Serialize Decimal to string."""
        return str(value)


class WebhookEvent(BaseModel):
    """The parts of a payment provider webhook the handler acts on."""

    event_type: str
    external_order_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    amount: Optional[int] = Field(default=None, description="Amount in minor units")
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
