"""
Hourly credit alert sweep.

Reads balances and bonus grants, raises or resolves alerts. Never changes a
balance.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from shared.logging import get_logger
from shared.models import CreditAlert, CreditBalance, utc_now
from shared.store import Store, StoreSession

logger = get_logger("reconciliation.alerts")

NOTIFY_WINDOW = timedelta(hours=24)
BONUS_EXPIRY_WINDOW = timedelta(days=7)


@dataclass
class AlertSweepResult:
    alerts_created: int = 0
    alerts_resolved: int = 0

    def as_dict(self) -> dict:
        return {"alerts_created": self.alerts_created, "alerts_resolved": self.alerts_resolved}


def _recently_notified(balance: CreditBalance, now: datetime) -> bool:
    notified_at = balance.low_balance_notified_at
    return notified_at is not None and notified_at > now - NOTIFY_WINDOW


class AlertSweep:
    """Low balance, depleted balance and expiring bonus alerts."""

    def __init__(self, store: Store):
        self.store = store

    async def run(self, now: Optional[datetime] = None) -> AlertSweepResult:
        now = now or utc_now()
        result = AlertSweepResult()
        async with self.store.session() as s:
            for balance in await s.list_balances():
                await self._check_balance(s, balance, now, result)
            await self._check_expiring_bonuses(s, now, result)
        logger.info("Credit alert sweep finished", extra=result.as_dict())
        return result

    async def _raise(
        self,
        s: StoreSession,
        balance: CreditBalance,
        alert_type: str,
        threshold: Optional[int],
        now: datetime,
    ) -> None:
        await s.insert_alert(CreditAlert(
            user_id=balance.user_id,
            type=alert_type,
            threshold=threshold,
            current_balance=balance.available,
            notified_at=now,
        ))
        await s.stamp_low_balance_notified(balance.user_id, now)
        # Keep the in-memory copy current so the depleted check sees the stamp
        balance.low_balance_notified_at = now

    async def _check_balance(
        self,
        s: StoreSession,
        balance: CreditBalance,
        now: datetime,
        result: AlertSweepResult,
    ) -> None:
        """
        Raise or resolve the balance alerts of one user.

        Low balance and depleted alerts share one notification stamp, so a
        user with a threshold who drops to zero gets the low balance alert
        and no depleted alert until the window has passed.
        """
        threshold = balance.low_balance_threshold
        if threshold is not None:
            if balance.available < threshold:
                if not _recently_notified(balance, now):
                    await self._raise(s, balance, "low_balance", threshold, now)
                    result.alerts_created += 1
            else:
                result.alerts_resolved += await s.resolve_alerts(balance.user_id, "low_balance", now)

        if balance.available <= 0 and not _recently_notified(balance, now):
            await self._raise(s, balance, "balance_depleted", 0, now)
            result.alerts_created += 1

    async def _check_expiring_bonuses(self, s: StoreSession, now: datetime, result: AlertSweepResult) -> None:
        for grant in await s.list_expiring_bonus_credits(now + BONUS_EXPIRY_WINDOW):
            if grant.remaining_amount <= 0 or grant.expires_at is None:
                continue
            if await s.find_open_alert(grant.user_id, "bonus_expiring", bonus_credit_id=grant.id):
                continue
            await s.insert_alert(CreditAlert(
                user_id=grant.user_id,
                type="bonus_expiring",
                current_balance=grant.remaining_amount,
                bonus_credit_id=grant.id,
                message=f"{grant.remaining_amount} bonus credits expire at {grant.expires_at.isoformat()}",
                notified_at=now,
            ))
            result.alerts_created += 1
