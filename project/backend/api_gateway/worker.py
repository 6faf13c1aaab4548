"""
Worker process.

Consumes every generation and reconciliation queue, reports job outcomes to
the orchestrator and fires repeatable jobs on their cron schedule.
"""

import asyncio
from typing import Any, Dict, List

from shared.config import settings
from shared.logging import get_logger
from api_gateway.context import AppContext, build_context
from api_gateway.services.queue_service import QueueJob
from api_gateway.services.queue_worker import QueueWorker
from modules.generation import create_generation_workers
from modules.pipeline import TemplateRegistry
from modules.reconciliation import ReconciliationJobs

logger = get_logger(__name__)


def queue_concurrency(templates: TemplateRegistry) -> Dict[str, int]:
    """Per-queue concurrency: the highest value any stage declares for that queue."""
    limits: Dict[str, int] = {}
    for template in templates.list_templates():
        for stage in template.stages:
            current = limits.get(stage.queue_name, 0)
            limits[stage.queue_name] = max(current, stage.queue_config.concurrency)
    return limits


class WorkerProcess:
    """Owns the queue workers and the scheduler loop for one process."""

    def __init__(self, context: AppContext):
        self.context = context
        self.workers: List[QueueWorker] = []
        self.reconciliation = ReconciliationJobs(context.store, context.ledger)
        self._stopping = False

    async def on_completed(self, job: QueueJob, result: Any) -> None:
        run_id = job.data.get("pipeline_run_id")
        if not run_id:
            return
        if isinstance(result, dict) and result.get("discarded"):
            return
        await self.context.orchestrator.on_job_finished(
            run_id, job.data["stage_id"], True, attempt=job.data.get("stage_attempt")
        )

    async def on_failed(self, job: QueueJob, error: BaseException) -> None:
        run_id = job.data.get("pipeline_run_id")
        if not run_id:
            return
        await self.context.orchestrator.on_job_finished(
            run_id, job.data["stage_id"], False, str(error), attempt=job.data.get("stage_attempt")
        )

    def build_workers(self) -> List[QueueWorker]:
        ctx = self.context
        processors = create_generation_workers(
            ctx.store,
            ctx.ledger,
            ctx.queue,
            llm=ctx.llm,
            media=ctx.media,
            speech=ctx.speech,
            storage=ctx.storage,
            credits_per_usd=ctx.settings.credits_per_usd,
        )
        limits = queue_concurrency(ctx.templates)
        poll_timeout = ctx.settings.worker_poll_timeout

        workers = [
            QueueWorker(
                ctx.queue,
                queue_name,
                processor,
                concurrency=limits.get(queue_name, 1),
                on_completed=self.on_completed,
                on_failed=self.on_failed,
                poll_timeout=poll_timeout,
            )
            for queue_name, processor in processors.items()
        ]
        workers.extend(
            QueueWorker(ctx.queue, queue_name, processor, concurrency=1, poll_timeout=poll_timeout)
            for queue_name, processor in self.reconciliation.processors().items()
        )
        self.workers = workers
        return workers

    async def poll_running_stages(self) -> int:
        """Re-evaluate running stages of running runs; returns how many changed."""
        async with self.context.store.session() as s:
            runs = await s.list_runs("running")
            running = []
            for run in runs:
                stages = await s.list_run_stages(run.id)
                running.extend((run.id, row.stage_id) for row in stages if row.status == "running")

        changed = 0
        for run_id, stage_id in running:
            status = await self.context.orchestrator.check_stage(run_id, stage_id)
            if status not in (None, "running"):
                changed += 1
        return changed

    async def scheduler_loop(self) -> None:
        interval = self.context.settings.scheduler_interval_seconds
        logger.info("Scheduler started", extra={"interval_seconds": interval})
        while not self._stopping:
            try:
                fired = await self.context.queue.enqueue_due_repeatables()
                changed = await self.poll_running_stages()
                if fired or changed:
                    logger.info("Scheduler tick", extra={"fired": fired, "stages_changed": changed})
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Scheduler tick failed", exc_info=e)
            await asyncio.sleep(interval)

    async def run(self) -> None:
        await self.reconciliation.register(self.context.queue)
        workers = self.build_workers()
        logger.info("Worker process started", extra={"queues": [w.queue_name for w in workers]})

        tasks = [asyncio.create_task(w.run()) for w in workers]
        tasks.append(asyncio.create_task(self.scheduler_loop()))
        try:
            await asyncio.gather(*tasks)
        finally:
            self._stopping = True
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for worker in workers:
                await worker.stop()


async def main():
    """Main entry point for worker."""
    context = await build_context(settings)
    try:
        await WorkerProcess(context).run()
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error("Worker crashed", exc_info=e)
        raise
    finally:
        await context.close()


if __name__ == "__main__":
    asyncio.run(main())
