"""
Queue worker.

Consumes one named queue with a concurrency limit, routes failures into the
queue's retry/backoff policy and reports final outcomes to callbacks.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from shared.errors import RetryableError
from shared.logging import get_logger, set_log_context
from api_gateway.services.queue_service import QueueJob, QueueService

logger = get_logger(__name__)

Processor = Callable[[QueueJob], Awaitable[Any]]
CompletedCallback = Callable[[QueueJob, Any], Awaitable[None]]
FailedCallback = Callable[[QueueJob, BaseException], Awaitable[None]]


class QueueWorker:
    """Semaphore-bounded consumer for a single queue."""

    def __init__(
        self,
        queue: QueueService,
        queue_name: str,
        processor: Processor,
        concurrency: int = 1,
        on_completed: Optional[CompletedCallback] = None,
        on_failed: Optional[FailedCallback] = None,
        poll_timeout: int = 5,
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.processor = processor
        self.concurrency = concurrency
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.poll_timeout = poll_timeout
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = False

    async def process_job(self, job: QueueJob) -> None:
        """
        Run one job through the processor and settle it on the queue.

        Retryable errors with attempts left go back to the queue with backoff.
        Anything else (or the last attempt) is final: on_failed is called.
        """
        set_log_context(run_id=job.data.get("pipeline_run_id"), job_id=job.id)
        logger.info(
            "Processing job",
            extra={"queue_name": self.queue_name, "job_name": job.name, "attempt": job.attempt_number}
        )
        try:
            result = await self.processor(job)
        except Exception as e:
            retried = await self.queue.fail(job, str(e), retryable=isinstance(e, RetryableError))
            if retried:
                return
            logger.error(
                "Job failed permanently",
                exc_info=e,
                extra={"queue_name": self.queue_name, "job_name": job.name, "attempt": job.attempt_number}
            )
            if self.on_failed:
                await self.on_failed(job, e)
            return

        await self.queue.complete(job, result)
        logger.info("Job completed", extra={"queue_name": self.queue_name, "job_name": job.name})
        if self.on_completed:
            await self.on_completed(job, result)

    async def _run_with_limit(self, job: QueueJob) -> None:
        try:
            await self.process_job(job)
        except Exception as e:
            # Callback or queue bookkeeping failed; the loop must keep consuming
            logger.error("Error finishing job", exc_info=e, extra={"queue_name": self.queue_name, "job_id": job.id})
        finally:
            self._semaphore.release()
            set_log_context()

    async def run(self) -> None:
        """Consume until stop() is called or the task is cancelled."""
        logger.info("Worker started", extra={"queue_name": self.queue_name, "concurrency": self.concurrency})
        while not self._stopping:
            await self._semaphore.acquire()
            try:
                job = await self.queue.fetch_next(self.queue_name, timeout=self.poll_timeout)
            except asyncio.CancelledError:
                self._semaphore.release()
                logger.info("Worker loop cancelled", extra={"queue_name": self.queue_name})
                break
            except Exception as e:
                self._semaphore.release()
                logger.error("Error fetching job", exc_info=e, extra={"queue_name": self.queue_name})
                await asyncio.sleep(self.poll_timeout)
                continue

            if job is None:
                self._semaphore.release()
                continue

            task = asyncio.create_task(self._run_with_limit(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def stop(self) -> None:
        """Stop fetching and wait for in-flight jobs."""
        self._stopping = True
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Worker stopped", extra={"queue_name": self.queue_name})
