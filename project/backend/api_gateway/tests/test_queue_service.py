"""
Tests for the Redis queue service with a mocked Redis connection.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shared.errors import RetryableError, ValidationError
from shared.redis_client import RedisClient
from api_gateway.services.queue_service import PRIORITY_SPAN, QueueJob, QueueService, compute_backoff_ms


@pytest.fixture
def pipe():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    return pipe


@pytest.fixture
def queue(pipe):
    """QueueService over an AsyncMock Redis client with a recording pipeline."""
    client = AsyncMock()
    client.pipeline = MagicMock()
    client.pipeline.return_value.__aenter__.return_value = pipe
    client.pipeline.return_value.__aexit__.return_value = False
    with patch("shared.redis_client.redis.from_url", return_value=client):
        redis_client = RedisClient("redis://localhost:6379/0", "cf:test")
    return QueueService(redis_client)


def _job(**overrides):
    fields = dict(id="job-1", queue_name="media-generation", name="generate-image", data={"scene_id": "s1"})
    fields.update(overrides)
    return QueueJob(**fields)


def test_compute_backoff():
    """Test fixed and exponential backoff delays."""
    assert compute_backoff_ms("fixed", 5000, 3) == 5000
    assert [compute_backoff_ms("exponential", 1000, n) for n in (1, 2, 3)] == [1000, 2000, 4000]


def test_attempt_bookkeeping():
    job = _job(attempts_made=2, max_attempts=3)
    assert job.attempt_number == 3
    assert job.is_final_attempt is True
    assert _job(attempts_made=0, max_attempts=3).is_final_attempt is False


def test_job_from_hash():
    job = QueueJob.from_hash("q", "j1", {"name": "n", "data": '{"a": 1}', "attempts_made": "1", "max_attempts": "4"})
    assert job.data == {"a": 1}
    assert (job.attempts_made, job.max_attempts) == (1, 4)


@pytest.mark.asyncio
async def test_enqueue_scores_by_priority_then_sequence(queue, pipe):
    """Test that jobs are stored and placed on the wait set by priority and sequence."""
    queue.client.hsetnx.return_value = True
    queue.client.incr.return_value = 7

    job_id = await queue.enqueue("media-generation", "generate-image", {"scene_id": "s1"}, priority=2, job_id="j1")

    assert job_id == "j1"
    mapping = pipe.hset.call_args.kwargs["mapping"]
    assert json.loads(mapping["data"]) == {"scene_id": "s1"}
    assert mapping["max_attempts"] == 3
    pipe.zadd.assert_called_once_with("cf:test:media-generation:wait", {"j1": 2 * PRIORITY_SPAN + 7})


@pytest.mark.asyncio
async def test_enqueue_duplicate_job_id_is_skipped(queue, pipe):
    queue.client.hsetnx.return_value = False
    assert await queue.enqueue("q", "n", {}, job_id="fixed") == "fixed"
    pipe.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_enqueue_redis_failure_is_retryable(queue):
    queue.client.hsetnx.side_effect = RedisConnectionError("down")
    with pytest.raises(RetryableError):
        await queue.enqueue("q", "n", {})


@pytest.mark.asyncio
async def test_fail_schedules_retry_with_backoff(queue, pipe):
    """Test that a retryable failure with attempts left goes to the delayed set."""
    job = _job(attempts_made=0, max_attempts=3, backoff_delay=1000)
    with patch("api_gateway.services.queue_service._now_ms", return_value=10_000):
        retried = await queue.fail(job, "timeout", retryable=True)
    assert retried is True
    pipe.zadd.assert_called_once_with("cf:test:media-generation:delayed", {"job-1": 11_000})


@pytest.mark.asyncio
async def test_fail_on_last_attempt_is_final(queue, pipe):
    job = _job(attempts_made=2, max_attempts=3)
    assert await queue.fail(job, "timeout", retryable=True) is False
    assert pipe.hset.call_args.kwargs["mapping"]["status"] == "failed"


@pytest.mark.asyncio
async def test_fail_non_retryable_is_final(queue):
    assert await queue.fail(_job(attempts_made=0, max_attempts=3), "bad input", retryable=False) is False


@pytest.mark.asyncio
async def test_update_job_data_merges_and_deletes(queue):
    """Test that None values remove keys and the job copy is updated in place."""
    job = _job(data={"scene_id": "s1", "reservation_id": "r1"})
    await queue.update_job_data(job, {"reservation_id": None, "media_id": "m1"})
    assert job.data == {"scene_id": "s1", "media_id": "m1"}
    key, field, raw = queue.client.hset.call_args.args
    assert key == "cf:test:media-generation:job:job-1"
    assert json.loads(raw) == job.data


@pytest.mark.asyncio
async def test_fetch_next_returns_none_when_idle(queue):
    queue.client.zrangebyscore.return_value = []
    queue.client.bzpopmin.return_value = None
    assert await queue.fetch_next("q", timeout=1) is None


@pytest.mark.asyncio
async def test_fetch_next_marks_job_active(queue):
    queue.client.zrangebyscore.return_value = []
    queue.client.bzpopmin.return_value = ("cf:test:q:wait", "j1", 1.0)
    queue.client.hgetall.return_value = {"name": "n", "data": '{"x": 1}', "attempts_made": "0", "max_attempts": "3"}

    job = await queue.fetch_next("q", timeout=1)

    assert job.id == "j1"
    assert job.data == {"x": 1}
    queue.client.sadd.assert_awaited_with("cf:test:q:active", "j1")


@pytest.mark.asyncio
async def test_register_repeatable_rejects_bad_cron(queue):
    with pytest.raises(ValidationError):
        await queue.register_repeatable("q", "n", "not a cron", "fixed")


@pytest.mark.asyncio
async def test_register_repeatable_keeps_original_registration_time(queue):
    """Test that re-registering the same id never adds a second schedule."""
    queue.client.hget.return_value = json.dumps({"registered_at": 100.0})
    await queue.register_repeatable("q", "n", "0 * * * *", "fixed")
    key, job_id, raw = queue.client.hset.call_args.args
    assert job_id == "fixed"
    assert json.loads(raw)["registered_at"] == 100.0


@pytest.mark.asyncio
async def test_enqueue_due_repeatables_fires_once_per_slot(queue):
    """Test that each cron slot is enqueued under a deterministic id, guarded by a marker."""
    now = datetime(2026, 3, 1, 10, 30, tzinfo=timezone.utc)
    entry = {"queue_name": "credit-alert", "job_name": "check-credit-alerts", "cron": "0 * * * *", "data": {}, "registered_at": 0}
    queue.client.hgetall.return_value = {"credit-alert-repeatable": json.dumps(entry)}
    queue.client.set.return_value = True
    queue.enqueue = AsyncMock(return_value="x")

    fired = await queue.enqueue_due_repeatables(now)

    slot = int(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc).timestamp())
    assert fired == [f"credit-alert-repeatable:{slot}"]
    args, kwargs = queue.enqueue.call_args
    assert args[0] == "credit-alert"
    assert args[2]["scheduled_for"].startswith("2026-03-01T10:00:00")
    assert kwargs["job_id"] == f"credit-alert-repeatable:{slot}"

    queue.client.set.return_value = None
    assert await queue.enqueue_due_repeatables(now) == []
