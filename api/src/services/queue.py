"""
Redis queue service for pipeline jobs.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional
from datetime import datetime

from api.src.config import get_settings

settings = get_settings()

PIPELINE_QUEUE = "conveyor:jobs"
PIPELINE_STATUS = "conveyor:status"
CANCEL_PREFIX = "conveyor:cancel:"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_pipeline_run(
    run_id: str,
    build_number: int,
    config: Dict[str, Any],
    repo_info: Dict[str, Any],
):
    """Add pipeline run to processing queue."""
    client = await get_redis_client()

    job = {
        "run_id": run_id,
        "build_number": build_number,
        "config": config,
        "repo_info": repo_info,
        "queued_at": datetime.utcnow().isoformat(),
    }

    try:
        await client.lpush(PIPELINE_QUEUE, json.dumps(job))
        await client.hset(PIPELINE_STATUS, run_id, "queued")
    finally:
        await client.close()

async def request_cancel(run_id: str, expires: bool = True):
    """
    Flag a run for cancellation; the controller picks it up between polls
    and clears the flag when the run ends. A queued run may wait longer than
    ``cancel_ttl`` for a worker, so its flag is kept until then.
    """
    client = await get_redis_client()

    try:
        await client.set(
            f"{CANCEL_PREFIX}{run_id}",
            datetime.utcnow().isoformat(),
            ex=settings.cancel_ttl if expires else None,
        )
    finally:
        await client.close()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(PIPELINE_STATUS, run_id)
    finally:
        await client.close()

async def get_queue_length() -> int:
    """Get number of jobs in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(PIPELINE_QUEUE)
    finally:
        await client.close()
