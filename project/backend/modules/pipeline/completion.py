"""
Stage completion rules.
"""

from typing import Optional

from shared.models import CompletionCheckResult, PipelineRunStage, PipelineStageDefinition


def evaluate_completion(
    stage: PipelineStageDefinition,
    run_stage: PipelineRunStage,
    threshold: Optional[float] = None,
) -> CompletionCheckResult:
    """
    Decide whether a stage is complete, failed or still in progress.

    sequential: the job succeeding completes the stage, a failed job fails it.
    all-scenes-done: every job must succeed; the first failure fails the stage.
    threshold: once every job is terminal the stage completes if the success
    ratio reaches the threshold; it fails as soon as the threshold is out of
    reach.
    """
    done = run_stage.completed_jobs
    failed = run_stage.failed_jobs
    if run_stage.job_count is None:
        # Jobs not prepared yet
        return CompletionCheckResult(
            is_complete=False, completed_jobs=done, total_jobs=0, failed_jobs=failed, reason="preparing"
        )

    total = run_stage.job_count
    counts = {"completed_jobs": done, "total_jobs": total, "failed_jobs": failed}

    if total == 0:
        return CompletionCheckResult(is_complete=True, reason="no jobs", **counts)

    if stage.execution_mode == "sequential" or stage.completion_strategy == "all-scenes-done":
        if failed > 0:
            return CompletionCheckResult(
                is_complete=False,
                is_failed=True,
                reason=f"{failed} of {total} jobs failed",
                **counts
            )
        return CompletionCheckResult(is_complete=done >= total, **counts)

    required = threshold if threshold is not None else stage.completion_threshold
    if (total - failed) / total < required:
        return CompletionCheckResult(
            is_complete=False,
            is_failed=True,
            reason=f"{failed} of {total} jobs failed, below success threshold {required:.0%}",
            **counts
        )
    if done + failed >= total:
        return CompletionCheckResult(is_complete=True, **counts)
    return CompletionCheckResult(is_complete=False, **counts)
