#!/usr/bin/env python3
"""
Print waiting/delayed/active counts for every queue and the registered
repeatable jobs.
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from shared.config import settings
from shared.redis_client import RedisClient
from api_gateway.services.queue_service import QueueService
from modules.pipeline import create_default_registry
from modules.reconciliation.jobs import REPEATABLE_JOBS


async def inspect_queues():
    redis_client = RedisClient(settings.redis_url, settings.queue_key_prefix)
    queue = QueueService(redis_client)
    try:
        names = sorted(
            {stage.queue_name for t in create_default_registry().list_templates() for stage in t.stages}
            | {job.queue_name for job in REPEATABLE_JOBS}
        )
        print(f"Queue prefix: {settings.queue_key_prefix}")
        print("=" * 80)
        for name in names:
            sizes = await queue.get_queue_size(name)
            print(f"{name:<24} waiting={sizes['waiting']:<6} delayed={sizes['delayed']:<6} active={sizes['active']}")

        print("\nRepeatable jobs:")
        repeatables = await queue.list_repeatables()
        if not repeatables:
            print("  (none registered)")
        for job_id, spec in repeatables.items():
            print(f"  - {job_id}: {spec}")
    finally:
        await redis_client.close()


if __name__ == "__main__":
    asyncio.run(inspect_queues())
