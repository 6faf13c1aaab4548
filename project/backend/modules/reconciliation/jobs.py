"""
Repeatable reconciliation jobs and their queue processors.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.logging import get_logger
from shared.store import Store
from api_gateway.services.queue_service import QueueJob, QueueService
from modules.credit_ledger import CreditLedger
from modules.reconciliation.alerts import AlertSweep
from modules.reconciliation.daily_summary import DailyUsageRollup, previous_utc_day
from modules.reconciliation.reservation_sweep import ReservationSweep

logger = get_logger("reconciliation")

CREDIT_ALERT_QUEUE = "credit-alert"
DAILY_SUMMARY_QUEUE = "daily-summary"
RESERVATION_SWEEP_QUEUE = "reservation-sweep"
BONUS_EXPIRY_QUEUE = "bonus-expiry"


@dataclass(frozen=True)
class RepeatableJob:
    queue_name: str
    job_name: str
    cron: str
    fixed_job_id: str


REPEATABLE_JOBS: List[RepeatableJob] = [
    RepeatableJob(CREDIT_ALERT_QUEUE, "check-credit-alerts", "0 * * * *", "credit-alert-repeatable"),
    RepeatableJob(DAILY_SUMMARY_QUEUE, "aggregate-daily-usage", "0 0 * * *", "daily-summary-repeatable"),
    RepeatableJob(RESERVATION_SWEEP_QUEUE, "sweep-reservations", "*/5 * * * *", "reservation-sweep-repeatable"),
    RepeatableJob(BONUS_EXPIRY_QUEUE, "expire-bonuses", "0 * * * *", "bonus-expiry-repeatable"),
]


def _scheduled_for(job: QueueJob) -> Optional[datetime]:
    value = job.data.get("scheduled_for")
    return datetime.fromisoformat(value) if value else None


class ReconciliationJobs:
    """Binds each reconciliation queue to its sweep."""

    def __init__(self, store: Store, ledger: CreditLedger):
        self.ledger = ledger
        self.alerts = AlertSweep(store)
        self.rollup = DailyUsageRollup(store)
        self.reservations = ReservationSweep(store, ledger)

    async def register(self, queue: QueueService) -> None:
        """Register every repeatable under its fixed id; safe to call on every start."""
        for job in REPEATABLE_JOBS:
            await queue.register_repeatable(job.queue_name, job.job_name, job.cron, job.fixed_job_id)

    async def check_credit_alerts(self, job: QueueJob) -> Dict[str, Any]:
        return (await self.alerts.run()).as_dict()

    async def aggregate_daily_usage(self, job: QueueJob) -> Dict[str, Any]:
        # A late firing still rolls up the day before it was scheduled
        day = previous_utc_day(_scheduled_for(job))
        users = await self.rollup.run(day)
        return {"date": day.isoformat(), "users": users}

    async def sweep_reservations(self, job: QueueJob) -> Dict[str, Any]:
        return (await self.reservations.run()).as_dict()

    async def expire_bonuses(self, job: QueueJob) -> Dict[str, Any]:
        return {"expired": await self.ledger.expire_bonus_credits()}

    def processors(self) -> Dict[str, Callable[[QueueJob], Awaitable[Dict[str, Any]]]]:
        return {
            CREDIT_ALERT_QUEUE: self.check_credit_alerts,
            DAILY_SUMMARY_QUEUE: self.aggregate_daily_usage,
            RESERVATION_SWEEP_QUEUE: self.sweep_reservations,
            BONUS_EXPIRY_QUEUE: self.expire_bonuses,
        }
