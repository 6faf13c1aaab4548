"""
Pipeline orchestrator.

Walks a template's DAG for one run: dispatches ready stages, records job
outcomes, applies completion rules and advances the frontier. All state lives
in the store; every status change is a conditional update so concurrent
workers reporting at once dispatch each stage exactly once.
"""

from typing import Any, Dict, List, Optional, Protocol

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.models import (
    SATISFIED_STAGE_STATUSES,
    CompletionCheckResult,
    PipelineRun,
    PipelineRunStage,
    PipelineStageDefinition,
    PipelineTemplate,
    PreparedJob,
    StageHandlerContext,
    utc_now,
)
from shared.store import Store
from modules.pipeline.dag import find_ready_stages
from modules.pipeline.stage_registry import StageRegistry
from modules.pipeline.templates import TemplateRegistry, deep_merge

logger = get_logger("pipeline.orchestrator")


class JobQueue(Protocol):
    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Dict[str, Any],
        priority: Optional[int] = None,
        attempts: int = 3,
        backoff_type: str = "exponential",
        backoff_delay: int = 5000,
        job_id: Optional[str] = None,
    ) -> str:
        ...


class PipelineOrchestrator:
    """Drives pipeline runs through their stage DAG."""

    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        templates: TemplateRegistry,
        stages: StageRegistry,
    ):
        self.store = store
        self.queue = queue
        self.templates = templates
        self.stages = stages

    # Run lifecycle

    async def start_run(self, template_id: Optional[str], project_id: str, user_id: str) -> str:
        """
        Create a run for a project and dispatch its root stages.

        Raises:
            NotFoundError: If the project does not exist
            ValidationError: If the project belongs to another user or already
                has a running pipeline
        """
        template = self.templates.resolve(template_id)
        async with self.store.transaction() as s:
            project = await s.get_project(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            if project.user_id != user_id:
                raise ValidationError(f"Project {project_id} does not belong to user {user_id}")
            if await s.list_runs("running", project_id=project_id):
                raise ValidationError(f"Project {project_id} already has a running pipeline")

            run = PipelineRun(
                project_id=project_id,
                user_id=user_id,
                template_id=template.id,
                template_version=template.version,
                frozen_config=deep_merge(template.default_config, project.config),
            )
            if not await s.insert_run(run):
                raise ValidationError(f"Project {project_id} already has a running pipeline")
            await s.transition_run(run.id, ["pending"], "running", {"started_at": utc_now()})
            await s.update_project(project_id, {
                "status": "in_progress",
                "progress_percent": 0,
                "template_id": template.id,
            })

        logger.info(
            "Pipeline run started",
            extra={"run_id": run.id, "project_id": project_id, "template_id": template.id}
        )
        await self.advance(run.id)
        return run.id

    async def advance(self, run_id: str) -> List[str]:
        """
        Dispatch every stage whose dependencies are satisfied.

        Loops until the frontier stops moving, so skipped and zero-job stages
        unblock their dependents in the same call. Completes the run when
        every stage is completed or skipped.

        Returns:
            Ids of stages this call dispatched
        """
        dispatched: List[str] = []
        while True:
            async with self.store.session() as s:
                run = await s.get_run(run_id)
                if run is None:
                    raise NotFoundError(f"Run {run_id} not found")
                rows = await s.list_run_stages(run_id)
            if run.status != "running":
                return dispatched

            template = self._template_for(run)
            statuses = {row.stage_id: row.status for row in rows}

            failed = [row for row in rows if row.status == "failed"]
            if failed:
                await self._fail_run(run, failed[0].stage_id, failed[0].last_error or "stage failed")
                return dispatched

            if all(statuses.get(s.stage_id) in SATISFIED_STAGE_STATUSES for s in template.stages):
                await self._complete_run(run)
                return dispatched

            progressed = False
            for stage in find_ready_stages(template, statuses):
                outcome = await self._dispatch_stage(run, stage)
                if outcome is None:
                    continue
                dispatched.append(stage.stage_id)
                if outcome != "running":
                    progressed = True
            if not progressed:
                return dispatched

    async def on_job_finished(
        self,
        run_id: str,
        stage_id: str,
        succeeded: bool,
        error: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Optional[str]:
        """
        Record one job outcome and re-evaluate the stage.

        Signals for cancelled or completed runs, and for stages that are no
        longer running, are ignored. Outcomes for a failed run are still
        counted so an operator retry resumes from accurate counters.
        `attempt` is the stage attempt the job was dispatched under; outcomes
        from an attempt superseded by a retry are ignored.

        Returns:
            The stage status after evaluation, or None if the signal was ignored
        """
        async with self.store.session() as s:
            run = await s.get_run(run_id)
            current = await s.get_run_stage(run_id, stage_id)
            if run is None or run.status not in ("running", "failed") or current is None or current.status != "running":
                logger.info(
                    "Ignoring job outcome",
                    extra={
                        "run_id": run_id,
                        "stage_id": stage_id,
                        "run_status": run.status if run else None,
                        "stage_status": current.status if current else None,
                    }
                )
                return None
            row = await s.increment_run_stage(run_id, stage_id, succeeded, error, attempt=attempt)
        if row is None:
            logger.info(
                "Ignoring job outcome from a superseded attempt",
                extra={"run_id": run_id, "stage_id": stage_id, "attempt": attempt, "current_attempt": current.attempt}
            )
            return None

        logger.info(
            "Job outcome recorded",
            extra={
                "run_id": run_id,
                "stage_id": stage_id,
                "succeeded": succeeded,
                "completed_jobs": row.completed_jobs,
                "failed_jobs": row.failed_jobs,
                "job_count": row.job_count,
            }
        )
        return await self._evaluate(run, stage_id, row)

    async def check_stage(self, run_id: str, stage_id: str) -> Optional[str]:
        """Re-evaluate a running stage without a new job outcome (polling path)."""
        async with self.store.session() as s:
            run = await s.get_run(run_id)
            row = await s.get_run_stage(run_id, stage_id)
        if run is None or row is None or row.status != "running" or run.status not in ("running", "failed"):
            return row.status if row else None
        return await self._evaluate(run, stage_id, row)

    async def cancel_run(self, run_id: str) -> bool:
        """
        Cancel a pending or running run.

        In-flight jobs are not interrupted; their outcomes are ignored and
        their open reservations are released by the reservation sweep.
        """
        async with self.store.session() as s:
            run = await s.get_run(run_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found")
            cancelled = await s.transition_run(
                run_id, ["pending", "running"], "cancelled", {"completed_at": utc_now()}
            )
            if cancelled:
                await s.update_project(run.project_id, {"status": "cancelled"})
        logger.info("Pipeline run cancel requested", extra={"run_id": run_id, "cancelled": cancelled})
        return cancelled

    async def retry_stage(self, run_id: str, stage_id: str) -> List[str]:
        """
        Operator retry of a failed stage.

        Starts a new stage attempt with fresh counters, returns the run to
        running and re-prepares jobs; handlers only emit jobs for units that
        still lack output. Jobs still in flight from the failed attempt report
        under the old attempt and are not counted.

        Returns:
            Ids of stages dispatched as a result
        """
        async with self.store.session() as s:
            run = await s.get_run(run_id)
            row = await s.get_run_stage(run_id, stage_id)
            if run is None or row is None:
                raise NotFoundError(f"Stage {stage_id} of run {run_id} not found")
            if row.status != "failed":
                raise ValidationError(f"Stage {stage_id} is {row.status}, only failed stages can be retried")
            if run.status not in ("failed", "running"):
                raise ValidationError(f"Run {run_id} is {run.status} and cannot be retried")
            reset = await s.transition_run_stage(run_id, stage_id, ["failed"], "running", {
                "attempt": row.attempt + 1,
                "job_count": None,
                "completed_jobs": 0,
                "failed_jobs": 0,
                "last_error": None,
                "completed_at": None,
                "started_at": utc_now(),
            })
            if not reset:
                raise ValidationError(f"Stage {stage_id} is already being retried")
            await s.transition_run(run_id, ["failed"], "running", {"error_message": None, "completed_at": None})
            run = await s.get_run(run_id)
            row = await s.get_run_stage(run_id, stage_id)

        logger.info("Retrying stage", extra={"run_id": run_id, "stage_id": stage_id})
        stage = self._template_for(run).get_stage(stage_id)
        outcome = await self._prepare_and_enqueue(run, stage, row)
        dispatched = [stage_id]
        if outcome != "running":
            # The stage finished synchronously (no jobs or prepare failure)
            return dispatched + await self.advance(run_id)
        return dispatched

    async def get_run_status(self, run_id: str) -> Dict[str, Any]:
        """Run, stage and per-scene error detail for display."""
        async with self.store.session() as s:
            run = await s.get_run(run_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found")
            rows = {row.stage_id: row for row in await s.list_run_stages(run_id)}
            scenes = await s.list_scenes(run.project_id)
            project = await s.get_project(run.project_id)

        template = self.templates.get(run.template_id)
        stages = []
        for definition in (template.stages if template else []):
            row = rows.get(definition.stage_id)
            stages.append({
                "stage_id": definition.stage_id,
                "label": definition.label,
                "status": row.status if row else "pending",
                "job_count": (row.job_count or 0) if row else 0,
                "completed_jobs": row.completed_jobs if row else 0,
                "failed_jobs": row.failed_jobs if row else 0,
                "last_error": row.last_error if row else None,
            })
        return {
            "run": run.model_dump(),
            "progress_percent": project.progress_percent if project else None,
            "stages": stages,
            "scene_errors": [
                {"scene_id": sc.id, "index": sc.index, "status": sc.status, "error_message": sc.error_message}
                for sc in scenes
                if sc.status in ("failed", "skipped") or sc.error_message
            ],
        }

    # Internals

    def _template_for(self, run: PipelineRun) -> PipelineTemplate:
        return self.templates.get_required(run.template_id)

    def _is_disabled(self, run: PipelineRun, stage: PipelineStageDefinition) -> bool:
        if not stage.can_be_disabled:
            return False
        key = stage.config_key or stage.stage_id
        stage_config = run.frozen_config.get("stages", {}).get(key, {})
        return isinstance(stage_config, dict) and stage_config.get("enabled") is False

    async def _context(self, run: PipelineRun, stage: PipelineStageDefinition, row: PipelineRunStage) -> StageHandlerContext:
        async with self.store.session() as s:
            project = await s.get_project(run.project_id)
        if project is None:
            raise NotFoundError(f"Project {run.project_id} not found")
        return StageHandlerContext(run=run, stage=stage, project=project, run_stage=row)

    async def _dispatch_stage(self, run: PipelineRun, stage: PipelineStageDefinition) -> Optional[str]:
        """
        Claim and start one stage.

        Returns:
            None if another caller already claimed it, otherwise the stage
            status after dispatch
        """
        disabled = self._is_disabled(run, stage)
        row = PipelineRunStage(
            run_id=run.id,
            stage_id=stage.stage_id,
            status="skipped" if disabled else "running",
            completed_at=utc_now() if disabled else None,
        )
        async with self.store.session() as s:
            claimed = await s.insert_run_stage_if_absent(row)
            if claimed and not disabled:
                await s.update_run(run.id, {"current_stage_id": stage.stage_id})
                await s.update_project(run.project_id, {
                    "status": stage.project_status or stage.stage_id,
                    "progress_percent": stage.progress_percent,
                })
        if not claimed:
            return None
        if disabled:
            logger.info("Stage disabled by config, skipped", extra={"run_id": run.id, "stage_id": stage.stage_id})
            return "skipped"
        logger.info(
            "Dispatching stage",
            extra={"run_id": run.id, "stage_id": stage.stage_id, "execution_mode": stage.execution_mode}
        )
        return await self._prepare_and_enqueue(run, stage, row)

    async def _prepare_and_enqueue(
        self,
        run: PipelineRun,
        stage: PipelineStageDefinition,
        row: PipelineRunStage,
    ) -> str:
        try:
            handler = self.stages.get_required(stage.stage_id)
            ctx = await self._context(run, stage, row)
            jobs: List[PreparedJob] = await handler.prepare_jobs(ctx)
        except Exception as e:
            logger.error(
                "Failed to prepare stage jobs",
                exc_info=e,
                extra={"run_id": run.id, "stage_id": stage.stage_id}
            )
            await self._fail_stage(run, stage.stage_id, f"Failed to prepare jobs: {str(e)}")
            return "failed"

        async with self.store.session() as s:
            await s.update_run_stage(run.id, stage.stage_id, {"job_count": len(jobs)})
        row = row.model_copy(update={"job_count": len(jobs)})

        if not jobs:
            logger.info("Stage has no work, completing", extra={"run_id": run.id, "stage_id": stage.stage_id})
            result = CompletionCheckResult(is_complete=True, completed_jobs=0, total_jobs=0, reason="no jobs")
            await self._finish_stage(run, stage, row, result)
            return "completed"

        config = stage.queue_config
        try:
            for job in jobs:
                await self.queue.enqueue(
                    stage.queue_name,
                    stage.job_name,
                    {
                        **job.payload,
                        "pipeline_run_id": run.id,
                        "stage_id": stage.stage_id,
                        "stage_attempt": row.attempt,
                        "project_id": run.project_id,
                        "user_id": run.user_id,
                        "scene_status": stage.scene_status_on_complete,
                    },
                    priority=job.priority,
                    attempts=config.retries,
                    backoff_type=config.backoff_type,
                    backoff_delay=config.backoff_delay,
                )
        except Exception as e:
            logger.error("Failed to enqueue stage jobs", exc_info=e, extra={"run_id": run.id, "stage_id": stage.stage_id})
            await self._fail_stage(run, stage.stage_id, f"Failed to enqueue jobs: {str(e)}")
            return "failed"

        logger.info(
            "Stage jobs enqueued",
            extra={"run_id": run.id, "stage_id": stage.stage_id, "job_count": len(jobs), "queue_name": stage.queue_name}
        )
        return "running"

    async def _evaluate(self, run: PipelineRun, stage_id: str, row: PipelineRunStage) -> str:
        stage = self._template_for(run).get_stage(stage_id)
        handler = self.stages.get_required(stage_id)
        result = await handler.check_completion(await self._context(run, stage, row))

        if result.is_failed:
            await self._fail_stage(run, stage_id, result.reason or "stage failed")
            return "failed"
        if result.is_complete:
            if await self._finish_stage(run, stage, row, result):
                await self.advance(run.id)
            return "completed"
        return "running"

    async def _finish_stage(
        self,
        run: PipelineRun,
        stage: PipelineStageDefinition,
        row: PipelineRunStage,
        result: CompletionCheckResult,
    ) -> bool:
        """Complete a running stage; only the caller that wins the transition gets True."""
        async with self.store.session() as s:
            won = await s.transition_run_stage(
                run.id, stage.stage_id, ["running"], "completed", {"completed_at": utc_now()}
            )
        if not won:
            return False
        logger.info(
            "Stage completed",
            extra={
                "run_id": run.id,
                "stage_id": stage.stage_id,
                "completed_jobs": result.completed_jobs,
                "failed_jobs": result.failed_jobs,
                "total_jobs": result.total_jobs,
            }
        )
        handler = self.stages.get_required(stage.stage_id)
        await handler.on_stage_completed(await self._context(run, stage, row), result)
        return True

    async def _fail_stage(self, run: PipelineRun, stage_id: str, error: str) -> None:
        async with self.store.session() as s:
            won = await s.transition_run_stage(
                run.id, stage_id, ["running"], "failed", {"completed_at": utc_now(), "last_error": error}
            )
        if not won:
            return
        logger.error("Stage failed", extra={"run_id": run.id, "stage_id": stage_id, "error": error})
        await self._fail_run(run, stage_id, error)

    async def _fail_run(self, run: PipelineRun, stage_id: str, error: str) -> None:
        async with self.store.session() as s:
            failed = await s.transition_run(run.id, ["running"], "failed", {
                "error_message": f"Stage {stage_id} failed: {error}",
                "completed_at": utc_now(),
            })
            if failed:
                await s.update_project(run.project_id, {"status": "failed"})
        if failed:
            logger.error("Pipeline run failed", extra={"run_id": run.id, "stage_id": stage_id, "error": error})

    async def _complete_run(self, run: PipelineRun) -> None:
        async with self.store.session() as s:
            completed = await s.transition_run(run.id, ["running"], "completed", {
                "completed_at": utc_now(),
                "current_stage_id": None,
            })
            if completed:
                await s.update_project(run.project_id, {"status": "completed", "progress_percent": 100})
        if completed:
            logger.info("Pipeline run completed", extra={"run_id": run.id, "project_id": run.project_id})
