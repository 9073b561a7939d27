"""
Queue worker - pops run requests off Redis and executes them one at a time.
"""

import asyncio
import logging
import redis
import json
from typing import Optional, Dict, Any

from pydantic import ValidationError

from controller.src.config import get_settings
from controller.src.models.step import PipelineJob
from controller.src.services.executor import execute_pipeline, get_redis_client

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_QUEUE = "conveyor:jobs"
POP_TIMEOUT = 5
REDIS_BACKOFF = 5

def get_next_job() -> Optional[str]:
    """Block up to POP_TIMEOUT seconds for the next raw job payload."""
    client = get_redis_client()

    try:
        result = client.brpop(PIPELINE_QUEUE, timeout=POP_TIMEOUT)
        return result[1] if result else None
    finally:
        client.close()

def decode_job(payload: str) -> Optional[Dict[str, Any]]:
    """Parse a queued payload; anything that is not a run request is dropped."""
    try:
        job = json.loads(payload)
        PipelineJob(**job)
    except (json.JSONDecodeError, TypeError, ValidationError) as e:
        logger.error(f"Dropping malformed job payload: {e}")
        return None
    return job

async def worker_loop():
    logger.info(f"Worker started, waiting for jobs on {PIPELINE_QUEUE}")

    while True:
        try:
            payload = await asyncio.to_thread(get_next_job)
        except redis.RedisError as e:
            logger.error(f"Queue unavailable: {e}")
            await asyncio.sleep(REDIS_BACKOFF)
            continue

        if payload is None:
            continue

        job = decode_job(payload)
        if job is None:
            continue

        run_id = job["run_id"]
        logger.info(f"Received run {run_id} (#{job.get('build_number', 0)})")

        try:
            status = await execute_pipeline(job)
            logger.info(f"Run {run_id} finished: {status.value}")
        except Exception as e:
            logger.exception(f"Failed to execute pipeline {run_id}: {e}")

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
