"""
Reservation sweep: closes holds nobody will settle.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shared.logging import get_logger
from shared.models import utc_now
from shared.store import Store
from modules.credit_ledger import CreditLedger

logger = get_logger("reconciliation.reservations")


@dataclass
class ReservationSweepResult:
    expired: int = 0
    released: int = 0

    def as_dict(self) -> dict:
        return {"expired": self.expired, "released": self.released}


class ReservationSweep:
    """
    Expire active reservations past their TTL and release the holds of
    cancelled runs. Projects with a running run keep their holds.
    """

    def __init__(self, store: Store, ledger: CreditLedger):
        self.store = store
        self.ledger = ledger

    async def run(self, now: Optional[datetime] = None) -> ReservationSweepResult:
        now = now or utc_now()
        result = ReservationSweepResult()

        async with self.store.session() as s:
            overdue = await s.list_active_reservations(expired_before=now)
        for reservation in overdue:
            if await self.ledger.expire(reservation.id) == "expired":
                result.expired += 1

        async with self.store.session() as s:
            cancelled = {run.project_id for run in await s.list_runs("cancelled")}
            running = {run.project_id for run in await s.list_runs("running")}
            project_ids = cancelled - running
            orphaned = await s.list_active_reservations(project_ids=project_ids) if project_ids else []
        for reservation in orphaned:
            if await self.ledger.release(reservation.id) == "released":
                result.released += 1

        logger.info("Reservation sweep finished", extra=result.as_dict())
        return result
