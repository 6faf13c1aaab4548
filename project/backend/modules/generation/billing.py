"""
Reserve / settle / release around one unit of billable work.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from shared.errors import ReservationNotFoundError
from shared.logging import get_logger
from api_gateway.services.queue_service import QueueJob, QueueService
from modules.credit_ledger import CreditLedger

logger = get_logger("generation.billing")

RESERVATION_KEY = "reservation_id"


class CreditHold:
    """What the wrapped work reports back for settlement."""

    def __init__(self, reservation_id: str, estimate: int):
        self.reservation_id = reservation_id
        self.estimate = estimate
        self.actual: Optional[int] = None
        self.provider: Optional[str] = None
        self.model: Optional[str] = None
        self.metadata: Dict[str, Any] = {}

    def charge(
        self,
        credits: int,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        self.actual = credits
        self.provider = provider
        self.model = model
        self.metadata.update(metadata)

    @property
    def amount_to_settle(self) -> int:
        return self.estimate if self.actual is None else self.actual


async def release_stale_reservation(ledger: CreditLedger, queue: QueueService, job: QueueJob) -> None:
    """Release a hold left in the payload by an attempt that crashed before closing it."""
    stale_id = job.data.get(RESERVATION_KEY)
    if not stale_id:
        return
    try:
        status = await ledger.release(stale_id)
    except ReservationNotFoundError:
        status = "missing"
    logger.info(
        "Released reservation from previous attempt",
        extra={"reservation_id": stale_id, "status": status, "attempt": job.attempt_number}
    )
    await queue.update_job_data(job, {RESERVATION_KEY: None})


@asynccontextmanager
async def billed_operation(
    ledger: CreditLedger,
    queue: QueueService,
    job: QueueJob,
    user_id: str,
    project_id: Optional[str],
    estimate: int,
    operation_type: str,
    description: Optional[str] = None,
) -> AsyncIterator[CreditHold]:
    """
    Hold `estimate` credits for the duration of the block.

    The block settles with whatever it charged on the hold (the estimate if
    it charged nothing). Any exception releases the hold and propagates.

    Raises:
        InsufficientCreditsError: If the user cannot cover the estimate
    """
    await release_stale_reservation(ledger, queue, job)
    reservation_id = await ledger.reserve(user_id, estimate, operation_type, project_id=project_id)
    await queue.update_job_data(job, {RESERVATION_KEY: reservation_id})
    hold = CreditHold(reservation_id, estimate)

    try:
        yield hold
    except BaseException as e:
        try:
            await ledger.release(reservation_id)
        except Exception as release_error:
            # Left active; the reservation sweep expires it
            logger.error(
                "Failed to release reservation after error",
                exc_info=release_error,
                extra={"reservation_id": reservation_id, "original_error": str(e)}
            )
        else:
            await queue.update_job_data(job, {RESERVATION_KEY: None})
        raise

    await ledger.settle(
        reservation_id,
        hold.amount_to_settle,
        description=description,
        metadata={"job_id": job.id, **hold.metadata},
        provider=hold.provider,
        model=hold.model,
    )
    await queue.update_job_data(job, {RESERVATION_KEY: None})
