"""
Tests for stage completion rules.
"""

from shared.models import PipelineRunStage, PipelineStageDefinition
from modules.pipeline.completion import evaluate_completion


def _stage(**fields):
    return PipelineStageDefinition(stage_id="s", label="S", queue_name="q", job_name="j", **fields)


def _row(job_count, completed=0, failed=0):
    return PipelineRunStage(run_id="r", stage_id="s", job_count=job_count, completed_jobs=completed, failed_jobs=failed)


THRESHOLD = dict(execution_mode="parallel-per-scene", completion_strategy="threshold", completion_threshold=0.8)


def test_no_jobs_is_complete():
    assert evaluate_completion(_stage(), _row(0)).is_complete is True


def test_sequential_job_success_and_failure():
    stage = _stage()
    assert evaluate_completion(stage, _row(1)).is_complete is False
    assert evaluate_completion(stage, _row(1, completed=1)).is_complete is True
    failed = evaluate_completion(stage, _row(1, failed=1))
    assert failed.is_failed is True
    assert failed.is_complete is False


def test_all_scenes_done_fails_on_first_failure():
    stage = _stage(execution_mode="parallel-per-scene", completion_strategy="all-scenes-done")
    assert evaluate_completion(stage, _row(5, completed=4)).is_complete is False
    assert evaluate_completion(stage, _row(5, completed=5)).is_complete is True
    assert evaluate_completion(stage, _row(5, completed=1, failed=1)).is_failed is True


def test_threshold_passes_with_one_failure_in_five():
    """Test that 4 of 5 scenes meet a 0.8 threshold once every job is terminal."""
    stage = _stage(**THRESHOLD)
    assert evaluate_completion(stage, _row(5, completed=3, failed=1)).is_complete is False
    result = evaluate_completion(stage, _row(5, completed=4, failed=1))
    assert result.is_complete is True
    assert result.failed_jobs == 1


def test_threshold_override_of_one_requires_every_scene():
    """Test that a config threshold of 1.0 fails the same outcome."""
    stage = _stage(**THRESHOLD)
    result = evaluate_completion(stage, _row(5, completed=4, failed=1), threshold=1.0)
    assert result.is_failed is True


def test_threshold_fails_as_soon_as_unreachable():
    """Test that the stage fails before all jobs finish once success is impossible."""
    stage = _stage(**THRESHOLD)
    result = evaluate_completion(stage, _row(5, completed=1, failed=2))
    assert result.is_failed is True
    assert "below success threshold" in result.reason


def test_unprepared_stage_is_in_progress():
    row = PipelineRunStage(run_id="r", stage_id="s")
    result = evaluate_completion(_stage(), row)
    assert (result.is_complete, result.is_failed, result.reason) == (False, False, "preparing")
