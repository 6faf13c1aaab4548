"""
Queue service.

Named job queues on Redis (BullMQ-like behavior): priority/FIFO dispatch,
per-job attempts with fixed or exponential backoff, mutable job payloads,
progress events and idempotent repeatable (cron) jobs.

Keys, per queue Q under the configured prefix:
    Q:wait      zset  job ids scored by priority then enqueue sequence
    Q:delayed   zset  job ids scored by the epoch-ms they become runnable
    Q:active    set   job ids currently held by a worker
    Q:job:<id>  hash  job record
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from croniter import croniter
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from shared.errors import RetryableError, ValidationError
from shared.logging import get_logger
from shared.redis_client import RedisClient

logger = get_logger(__name__)

PRIORITY_SPAN = 10 ** 12
COMPLETED_TTL_SECONDS = 24 * 3600
FAILED_TTL_SECONDS = 7 * 24 * 3600
REPEAT_FIRED_TTL_SECONDS = 7 * 24 * 3600
HISTORY_LENGTH = 1000

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_TYPE = "exponential"
DEFAULT_BACKOFF_DELAY_MS = 5000


class QueueJob(BaseModel):
    """A job as seen by a worker."""

    id: str
    queue_name: str
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    attempts_made: int = 0
    max_attempts: int = DEFAULT_ATTEMPTS
    backoff_type: str = DEFAULT_BACKOFF_TYPE
    backoff_delay: int = DEFAULT_BACKOFF_DELAY_MS
    priority: int = 0
    progress: int = 0

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt in progress."""
        return self.attempts_made + 1

    @property
    def is_final_attempt(self) -> bool:
        """True when a failure now will not be retried."""
        return self.attempt_number >= self.max_attempts

    @classmethod
    def from_hash(cls, queue_name: str, job_id: str, raw: Dict[str, str]) -> "QueueJob":
        return cls(
            id=job_id,
            queue_name=queue_name,
            name=raw.get("name", ""),
            data=json.loads(raw.get("data") or "{}"),
            attempts_made=int(raw.get("attempts_made", 0)),
            max_attempts=int(raw.get("max_attempts", DEFAULT_ATTEMPTS)),
            backoff_type=raw.get("backoff_type", DEFAULT_BACKOFF_TYPE),
            backoff_delay=int(raw.get("backoff_delay", DEFAULT_BACKOFF_DELAY_MS)),
            priority=int(raw.get("priority", 0)),
            progress=int(raw.get("progress", 0)),
        )


def compute_backoff_ms(backoff_type: str, backoff_delay: int, attempts_made: int) -> int:
    """
    Delay before the next attempt.

    Args:
        backoff_type: "fixed" or "exponential"
        backoff_delay: Base delay in milliseconds
        attempts_made: Attempts already made, including the one that just failed
    """
    if backoff_type == "fixed":
        return backoff_delay
    return backoff_delay * (2 ** max(attempts_made - 1, 0))


def _now_ms() -> int:
    return int(time.time() * 1000)


class QueueService:
    """Redis-backed named queues."""

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client
        self.client = redis_client.client

    # Keys

    def _key(self, queue_name: str, *parts: str) -> str:
        return self.redis.key(queue_name, *parts)

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return self._key(queue_name, "job", job_id)

    def _repeat_key(self) -> str:
        return self.redis.key("repeat")

    async def _next_score(self, queue_name: str, priority: int) -> int:
        seq = await self.client.incr(self._key(queue_name, "seq"))
        return priority * PRIORITY_SPAN + seq

    # Producers

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Dict[str, Any],
        priority: Optional[int] = None,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff_type: str = DEFAULT_BACKOFF_TYPE,
        backoff_delay: int = DEFAULT_BACKOFF_DELAY_MS,
        job_id: Optional[str] = None,
    ) -> str:
        """
        Enqueue a job.

        Lower priority values run first; equal priorities run in enqueue order.
        An explicit job_id that already exists is not enqueued again.

        Returns:
            The job id
        """
        job_id = job_id or str(uuid4())
        job_key = self._job_key(queue_name, job_id)
        priority = priority or 0
        try:
            created = await self.client.hsetnx(job_key, "name", job_name)
            if not created:
                logger.info(
                    "Job already enqueued, skipping duplicate",
                    extra={"queue_name": queue_name, "job_id": job_id}
                )
                return job_id
            score = await self._next_score(queue_name, priority)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(job_key, mapping={
                    "data": json.dumps(payload, default=str),
                    "attempts_made": 0,
                    "max_attempts": max(attempts, 1),
                    "backoff_type": backoff_type,
                    "backoff_delay": backoff_delay,
                    "priority": priority,
                    "progress": 0,
                    "status": "waiting",
                    "created_at": datetime.now(timezone.utc).isoformat(),
                })
                pipe.zadd(self._key(queue_name, "wait"), {job_id: score})
                await pipe.execute()
        except RedisError as e:
            logger.error("Failed to enqueue job", exc_info=e, extra={"queue_name": queue_name, "job_id": job_id})
            raise RetryableError(f"Failed to enqueue job on {queue_name}: {str(e)}") from e

        logger.info(
            "Job enqueued",
            extra={"queue_name": queue_name, "job_name": job_name, "job_id": job_id, "priority": priority}
        )
        return job_id

    async def remove_job(self, queue_name: str, job_id: str) -> bool:
        """Remove a waiting or delayed job. Active jobs are left to finish."""
        removed = await self.client.zrem(self._key(queue_name, "wait"), job_id)
        removed += await self.client.zrem(self._key(queue_name, "delayed"), job_id)
        if removed:
            await self.client.delete(self._job_key(queue_name, job_id))
            logger.info("Job removed from queue", extra={"queue_name": queue_name, "job_id": job_id})
        return bool(removed)

    async def get_job(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        raw = await self.client.hgetall(self._job_key(queue_name, job_id))
        if not raw:
            return None
        return QueueJob.from_hash(queue_name, job_id, raw)

    async def get_job_status(self, queue_name: str, job_id: str) -> Optional[str]:
        return await self.client.hget(self._job_key(queue_name, job_id), "status")

    async def get_queue_size(self, queue_name: str) -> Dict[str, int]:
        """Counts of waiting, delayed and active jobs."""
        return {
            "waiting": await self.client.zcard(self._key(queue_name, "wait")),
            "delayed": await self.client.zcard(self._key(queue_name, "delayed")),
            "active": await self.client.scard(self._key(queue_name, "active")),
        }

    # Consumers

    async def promote_delayed(self, queue_name: str) -> int:
        """Move delayed jobs whose backoff elapsed back onto the wait set."""
        delayed_key = self._key(queue_name, "delayed")
        due = await self.client.zrangebyscore(delayed_key, 0, _now_ms())
        promoted = 0
        for job_id in due:
            # zrem decides which worker promotes a job
            if not await self.client.zrem(delayed_key, job_id):
                continue
            priority = int(await self.client.hget(self._job_key(queue_name, job_id), "priority") or 0)
            score = await self._next_score(queue_name, priority)
            await self.client.zadd(self._key(queue_name, "wait"), {job_id: score})
            await self.client.hset(self._job_key(queue_name, job_id), "status", "waiting")
            promoted += 1
        return promoted

    async def fetch_next(self, queue_name: str, timeout: int = 5) -> Optional[QueueJob]:
        """Block up to `timeout` seconds for the next runnable job."""
        await self.promote_delayed(queue_name)
        popped = await self.client.bzpopmin(self._key(queue_name, "wait"), timeout=timeout)
        if not popped:
            return None
        job_id = popped[1]
        job_key = self._job_key(queue_name, job_id)
        raw = await self.client.hgetall(job_key)
        if not raw:
            logger.warning("Popped job has no record, dropping", extra={"queue_name": queue_name, "job_id": job_id})
            return None
        await self.client.sadd(self._key(queue_name, "active"), job_id)
        await self.client.hset(job_key, mapping={
            "status": "active",
            "processed_at": datetime.now(timezone.utc).isoformat(),
        })
        return QueueJob.from_hash(queue_name, job_id, raw)

    async def update_job_data(self, job: QueueJob, patch: Dict[str, Any]) -> None:
        """Merge `patch` into the persisted payload; None values delete keys."""
        for key, value in patch.items():
            if value is None:
                job.data.pop(key, None)
            else:
                job.data[key] = value
        await self.client.hset(
            self._job_key(job.queue_name, job.id), "data", json.dumps(job.data, default=str)
        )

    async def update_progress(self, job: QueueJob, percent: int) -> None:
        """Record job progress and publish it on the queue's progress channel."""
        percent = max(0, min(100, int(percent)))
        job.progress = percent
        await self.client.hset(self._job_key(job.queue_name, job.id), "progress", percent)
        await self.client.publish(
            self._key(job.queue_name, "progress"),
            json.dumps({"job_id": job.id, "progress": percent, "data": job.data}, default=str),
        )

    async def complete(self, job: QueueJob, result: Any = None) -> None:
        job_key = self._job_key(job.queue_name, job.id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.srem(self._key(job.queue_name, "active"), job.id)
            pipe.hset(job_key, mapping={
                "status": "completed",
                "attempts_made": job.attempts_made + 1,
                "result": json.dumps(result, default=str),
                "finished_at": datetime.now(timezone.utc).isoformat(),
            })
            pipe.expire(job_key, COMPLETED_TTL_SECONDS)
            pipe.lpush(self._key(job.queue_name, "completed"), job.id)
            pipe.ltrim(self._key(job.queue_name, "completed"), 0, HISTORY_LENGTH - 1)
            await pipe.execute()

    async def fail(self, job: QueueJob, error: str, retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the job was scheduled for another attempt, False if it is
            now permanently failed.
        """
        attempts_made = job.attempts_made + 1
        job_key = self._job_key(job.queue_name, job.id)
        if retryable and attempts_made < job.max_attempts:
            delay = compute_backoff_ms(job.backoff_type, job.backoff_delay, attempts_made)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.srem(self._key(job.queue_name, "active"), job.id)
                pipe.hset(job_key, mapping={
                    "status": "delayed",
                    "attempts_made": attempts_made,
                    "last_error": error,
                })
                pipe.zadd(self._key(job.queue_name, "delayed"), {job.id: _now_ms() + delay})
                await pipe.execute()
            logger.warning(
                "Job attempt failed, retrying",
                extra={
                    "queue_name": job.queue_name,
                    "job_id": job.id,
                    "attempt": attempts_made,
                    "max_attempts": job.max_attempts,
                    "delay_ms": delay,
                    "error": error,
                }
            )
            return True

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.srem(self._key(job.queue_name, "active"), job.id)
            pipe.hset(job_key, mapping={
                "status": "failed",
                "attempts_made": attempts_made,
                "last_error": error,
                "finished_at": datetime.now(timezone.utc).isoformat(),
            })
            pipe.expire(job_key, FAILED_TTL_SECONDS)
            pipe.lpush(self._key(job.queue_name, "failed"), job.id)
            pipe.ltrim(self._key(job.queue_name, "failed"), 0, HISTORY_LENGTH - 1)
            await pipe.execute()
        return False

    # Repeatable jobs

    async def register_repeatable(
        self,
        queue_name: str,
        job_name: str,
        cron_pattern: str,
        fixed_job_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Register a cron-scheduled job under a fixed id.

        Registering the same id again replaces the schedule but keeps its
        original registration time, so restarts never add a second schedule.
        """
        if not croniter.is_valid(cron_pattern):
            raise ValidationError(f"Invalid cron pattern: {cron_pattern}")
        existing = await self.client.hget(self._repeat_key(), fixed_job_id)
        registered_at = time.time()
        if existing:
            registered_at = json.loads(existing).get("registered_at", registered_at)
        entry = {
            "queue_name": queue_name,
            "job_name": job_name,
            "cron": cron_pattern,
            "data": data or {},
            "registered_at": registered_at,
        }
        await self.client.hset(self._repeat_key(), fixed_job_id, json.dumps(entry))
        logger.info(
            "Repeatable job registered",
            extra={"queue_name": queue_name, "job_name": job_name, "cron": cron_pattern, "job_id": fixed_job_id}
        )

    async def list_repeatables(self) -> Dict[str, Dict[str, Any]]:
        raw = await self.client.hgetall(self._repeat_key())
        return {job_id: json.loads(entry) for job_id, entry in raw.items()}

    async def enqueue_due_repeatables(self, now: Optional[datetime] = None) -> List[str]:
        """
        Enqueue the most recent due firing of every repeatable job.

        Each firing gets the id "<fixed_job_id>:<epoch>" and a fire marker
        set with NX, so concurrent schedulers enqueue it once.
        """
        now = now or datetime.now(timezone.utc)
        enqueued = []
        for fixed_job_id, entry in (await self.list_repeatables()).items():
            fire_time = croniter(entry["cron"], now).get_prev(datetime)
            if fire_time.timestamp() < entry["registered_at"]:
                continue
            firing_id = f"{fixed_job_id}:{int(fire_time.timestamp())}"
            marker = self.redis.key("repeat", "fired", firing_id)
            if not await self.client.set(marker, "1", nx=True, ex=REPEAT_FIRED_TTL_SECONDS):
                continue
            payload = {**entry.get("data", {}), "scheduled_for": fire_time.isoformat()}
            await self.enqueue(
                entry["queue_name"],
                entry["job_name"],
                payload,
                attempts=1,
                job_id=firing_id,
            )
            enqueued.append(firing_id)
        return enqueued
