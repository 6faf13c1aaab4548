"""
Common plumbing for billing-aware queue processors.
"""

from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional

import httpx

from shared.errors import InsufficientCreditsError, RetryableError, ValidationError
from shared.logging import get_logger
from shared.store import Store
from api_gateway.services.queue_service import QueueJob, QueueService
from modules.credit_ledger import CreditLedger
from modules.generation.cost_estimator import credits_from_usd

logger = get_logger("generation")

DISCARDED = {"discarded": True}


def will_retry(job: QueueJob, error: BaseException) -> bool:
    """True when the queue will run this job again after `error`."""
    if isinstance(error, InsufficientCreditsError):
        return False
    return isinstance(error, RetryableError) and not job.is_final_attempt


def storage_key(user_id: str, record_id: str, extension: str) -> str:
    return f"generated-media/{user_id}/{record_id}.{extension}"


async def download_bytes(url: str, timeout: float = 60.0) -> bytes:
    """
    Fetch provider output.

    Raises:
        RetryableError: If the download fails
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content
    except httpx.HTTPError as e:
        logger.error(f"Failed to download output from {url}: {e}")
        raise RetryableError(f"Output download failed: {str(e)}") from e


class GenerationWorker:
    """Base processor: run-status gate plus ledger and queue handles."""

    operation_type: ClassVar[str]

    def __init__(
        self,
        store: Store,
        ledger: CreditLedger,
        queue: QueueService,
        credits_per_usd: int = 100,
    ):
        self.store = store
        self.ledger = ledger
        self.queue = queue
        self.credits_per_usd = credits_per_usd

    @staticmethod
    def require(data: Dict[str, Any], *keys: str) -> None:
        missing = [key for key in keys if not data.get(key)]
        if missing:
            raise ValidationError(f"Job payload missing {', '.join(missing)}")

    async def run_is_active(self, job: QueueJob) -> bool:
        """Jobs outside a pipeline run are always processed."""
        run_id = job.data.get("pipeline_run_id")
        if not run_id:
            return True
        async with self.store.session() as s:
            run = await s.get_run(run_id)
        return run is not None and run.status == "running"

    def actual_credits(self, cost_usd: Optional[Decimal], estimate: int) -> int:
        return credits_from_usd(cost_usd, estimate, self.credits_per_usd)

    async def __call__(self, job: QueueJob) -> Dict[str, Any]:
        if not await self.run_is_active(job):
            logger.info(
                "Discarding job for inactive run",
                extra={"job_name": job.name, "run_id": job.data.get("pipeline_run_id")}
            )
            return DISCARDED
        self.require(job.data, "user_id")
        return await self.process(job)

    async def process(self, job: QueueJob) -> Dict[str, Any]:
        raise NotImplementedError
