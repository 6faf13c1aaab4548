"""
Daily usage rollup.

Aggregates one UTC day of `usage` transactions per user and upserts the
summary keyed on (user_id, date), so re-running a day replaces its row.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional

from shared.logging import get_logger
from shared.models import CreditTransaction, DailyUsageSummary, UsageBucket, utc_now
from shared.store import Store

logger = get_logger("reconciliation.daily_summary")


def previous_utc_day(now: Optional[datetime] = None) -> date:
    return ((now or utc_now()).astimezone(timezone.utc) - timedelta(days=1)).date()


def _bump(buckets: Dict[str, UsageBucket], key: Optional[str], credits: int) -> None:
    if not key:
        return
    bucket = buckets.setdefault(key, UsageBucket())
    bucket.count += 1
    bucket.credits += credits


def summarize(user_id: str, day: date, transactions: List[CreditTransaction]) -> DailyUsageSummary:
    """Build one user's summary from that day's usage entries."""
    summary = DailyUsageSummary(user_id=user_id, date=day)
    for txn in transactions:
        credits = abs(txn.amount)
        summary.total_requests += 1
        summary.total_credits_used += credits
        _bump(summary.operation_breakdown, txn.operation_type, credits)
        _bump(summary.provider_breakdown, txn.provider, credits)
        _bump(summary.model_breakdown, txn.model, credits)
    return summary


class DailyUsageRollup:
    """Usage rollup for one UTC day."""

    def __init__(self, store: Store):
        self.store = store

    async def run(self, day: Optional[date] = None) -> int:
        """
        Roll up `day` (default: yesterday, UTC).

        Returns:
            Number of users with usage that day
        """
        day = day or previous_utc_day()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        async with self.store.session() as s:
            balances = await s.list_balances()

        processed = 0
        for balance in balances:
            async with self.store.session() as s:
                transactions = await s.list_transactions(
                    balance.user_id, types=["usage"], since=start, until=end, limit=None
                )
                if not transactions:
                    continue
                await s.upsert_daily_summary(summarize(balance.user_id, day, transactions))
            processed += 1

        logger.info("Daily usage rollup finished", extra={"date": day.isoformat(), "users": processed})
        return processed
