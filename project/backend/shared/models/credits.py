"""
Credit ledger data models.

Defines balances, the append-only transaction log, reservations, bonus grants,
alerts and daily usage rollups.
"""

from datetime import date as date_type, datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_serializer

from shared.models.common import new_id, utc_now

CreditTransactionType = Literal[
    "purchase",
    "usage",
    "bonus",
    "admin_grant",
    "admin_deduction",
    "refund",
    "reservation",
    "reservation_settle",
    "reservation_release",
    "bonus_expired",
]
ReservationStatus = Literal["active", "settled", "released", "expired"]
GrantSource = Literal["purchase", "bonus", "admin_grant", "refund"]
AlertType = Literal["low_balance", "balance_depleted", "bonus_expiring"]


class CreditBalance(BaseModel):
    """Per-user balance row; mutated only under its row lock."""

    user_id: str
    balance: int = 0
    bonus_balance: int = 0
    lifetime_credits_received: int = 0
    lifetime_credits_used: int = 0
    low_balance_threshold: Optional[int] = Field(default=None, ge=0)
    low_balance_notified_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def available(self) -> int:
        """Credits usable right now; active holds are already debited."""
        return self.balance + self.bonus_balance


class CreditTransaction(BaseModel):
    """Append-only ledger entry. Positive amounts credit, negative debit."""

    id: str = Field(default_factory=new_id)
    user_id: str
    type: CreditTransactionType
    amount: int
    description: Optional[str] = None
    project_id: Optional[str] = None
    operation_type: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @field_serializer("created_at")
    def serialize_datetime(self, value: datetime) -> str:
        """Serialize datetime to ISO format string."""
        return value.isoformat()


class BonusAllocation(BaseModel):
    """Portion of a reservation drawn from one bonus grant."""

    bonus_credit_id: str
    amount: int = Field(gt=0)


class CreditReservation(BaseModel):
    """A hold on credits for one unit of work."""

    id: str = Field(default_factory=new_id)
    user_id: str
    project_id: Optional[str] = None
    amount: int = Field(gt=0)
    bonus_amount: int = Field(default=0, ge=0, description="Portion drawn from bonus grants")
    bonus_allocations: List[BonusAllocation] = Field(default_factory=list)
    operation_type: str
    status: ReservationStatus = "active"
    expires_at: datetime
    settled_amount: Optional[int] = None
    settled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def purchased_amount(self) -> int:
        """Portion drawn from the purchased balance."""
        return self.amount - self.bonus_amount


class BonusCredit(BaseModel):
    """A bonus grant, consumed before purchased credits and optionally expiring."""

    id: str = Field(default_factory=new_id)
    user_id: str
    amount: int = Field(gt=0)
    remaining_amount: int = Field(ge=0)
    source: str = "bonus"
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_expired: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class CreditAlert(BaseModel):
    """Balance alert raised by the hourly sweep."""

    id: str = Field(default_factory=new_id)
    user_id: str
    type: AlertType
    threshold: Optional[int] = None
    current_balance: int
    bonus_credit_id: Optional[str] = None
    message: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    notified_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)


class UsageBucket(BaseModel):
    """Count and credits for one breakdown key."""

    count: int = 0
    credits: int = 0


class DailyUsageSummary(BaseModel):
    """Per-user per-day usage rollup, unique on (user_id, date)."""

    user_id: str
    date: date_type
    total_requests: int = 0
    total_credits_used: int = 0
    operation_breakdown: Dict[str, UsageBucket] = Field(default_factory=dict)
    provider_breakdown: Dict[str, UsageBucket] = Field(default_factory=dict)
    model_breakdown: Dict[str, UsageBucket] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_serializer("date")
    def serialize_date(self, value: date_type) -> str:
        """Serialize date to ISO format string."""
        return value.isoformat()
