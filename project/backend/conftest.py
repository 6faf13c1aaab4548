"""
Shared test fixtures: in-memory store, ledger and a recording queue.
"""

from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest

from shared.store import MemoryStore
from api_gateway.services.queue_service import QueueJob
from modules.credit_ledger import CreditLedger


class RecordingQueue:
    """Stands in for QueueService; records enqueues and payload updates."""

    def __init__(self):
        self.enqueued: List[Dict[str, Any]] = []
        self.progress: List[int] = []

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
        job_id = job_id or str(uuid4())
        self.enqueued.append({
            "id": job_id,
            "queue_name": queue_name,
            "job_name": job_name,
            "payload": payload,
            "priority": priority,
            "attempts": attempts,
            "backoff_type": backoff_type,
            "backoff_delay": backoff_delay,
        })
        return job_id

    async def update_job_data(self, job: QueueJob, patch: Dict[str, Any]) -> None:
        for key, value in patch.items():
            if value is None:
                job.data.pop(key, None)
            else:
                job.data[key] = value

    async def update_progress(self, job: QueueJob, percent: int) -> None:
        job.progress = percent
        self.progress.append(percent)

    def jobs_for(self, queue_name: str) -> List[Dict[str, Any]]:
        return [job for job in self.enqueued if job["queue_name"] == queue_name]

    def as_queue_job(self, entry: Dict[str, Any], attempts_made: int = 0) -> QueueJob:
        return QueueJob(
            id=entry["id"],
            queue_name=entry["queue_name"],
            name=entry["job_name"],
            data=dict(entry["payload"]),
            attempts_made=attempts_made,
            max_attempts=entry["attempts"],
        )


@pytest.fixture
def store():
    """Fresh in-memory store."""
    return MemoryStore()


@pytest.fixture
def ledger(store):
    """Ledger with no starter credits so balances start at zero."""
    return CreditLedger(store, default_free_credits=0, reservation_ttl_seconds=3600)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def make_job():
    """Build a QueueJob for calling processors directly."""
    def _make(queue_name: str, data: Dict[str, Any], attempts_made: int = 0, max_attempts: int = 3) -> QueueJob:
        return QueueJob(
            id=str(uuid4()),
            queue_name=queue_name,
            name="test-job",
            data=data,
            attempts_made=attempts_made,
            max_attempts=max_attempts,
        )
    return _make
