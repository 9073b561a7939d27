"""
Pipeline executor - wires a queued job to the execution engine.
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import redis
from sqlalchemy.exc import SQLAlchemyError

from controller.src.config import get_settings
from controller.src.errors import MalformedDefinition, NoEnvironmentMatch, WorkspaceError
from controller.src.models.step import PipelineJob, PipelineRun, RunStatus
from controller.src.notifications import NotificationChannel
from controller.src.services.credentials import CredentialResolver
from controller.src.services.definition_loader import load_definition_dict
from controller.src.services.engine import ExecutionEngine
from controller.src.services.environment import EnvironmentResolver, normalize_ref
from controller.src.services.notifier import Notifier, build_channels
from controller.src.services.status_reporter import StatusReporter, record_run, update_run_status
from controller.src.services.workspace import checkout, cleanup
from controller.src.tools.base import Capability
from controller.src.tools.registry import build_capabilities

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_STATUS = "conveyor:status"
CANCEL_PREFIX = "conveyor:cancel:"


def cancel_key(run_id: str) -> str:
    return f"{CANCEL_PREFIX}{run_id}"


def get_redis_client() -> redis.Redis:
    return redis.from_url(settings.redis_url, decode_responses=True)


def publish_status(run_id: str, status: str):
    """Mirror run status into Redis for the live status endpoint."""
    client = get_redis_client()
    try:
        client.hset(PIPELINE_STATUS, run_id, status)
        if status not in (RunStatus.QUEUED.value, RunStatus.RUNNING.value):
            client.delete(cancel_key(run_id))
    except redis.RedisError as e:
        logger.warning(f"Failed to publish status of run {run_id}: {e}")
    finally:
        client.close()


def cancel_requested(run_id: str) -> bool:
    client = get_redis_client()
    try:
        return bool(client.exists(cancel_key(run_id)))
    finally:
        client.close()


async def watch_for_cancel(run_id: str, cancel_event: asyncio.Event, interval: Optional[float] = None):
    """Set ``cancel_event`` once a cancel request for the run shows up."""
    interval = interval or settings.cancel_poll_interval

    while not cancel_event.is_set():
        try:
            if await asyncio.to_thread(cancel_requested, run_id):
                logger.warning(f"Cancel requested for run {run_id}")
                cancel_event.set()
                return
        except redis.RedisError as e:
            logger.warning(f"Cancel check for run {run_id} failed: {e}")
        await asyncio.sleep(interval)


def report_started(run: PipelineRun, environment: str):
    try:
        update_run_status(
            run.run_id, RunStatus.RUNNING.value, started_at=run.started_at, environment=environment
        )
    except SQLAlchemyError:
        logger.exception(f"Failed to record start of run {run.run_id}")
    publish_status(run.run_id, RunStatus.RUNNING.value)


async def cancelled_while_queued(run_id: str) -> bool:
    try:
        return await asyncio.to_thread(cancel_requested, run_id)
    except redis.RedisError as e:
        logger.warning(f"Cancel check for run {run_id} failed: {e}")
        return False


def persist(run: PipelineRun):
    try:
        record_run(run)
    except SQLAlchemyError:
        logger.exception(f"Failed to persist final state of run {run.run_id}")
    publish_status(run.run_id, run.status.value)


async def execute_pipeline(
    job_data: Dict[str, Any],
    capabilities: Optional[Mapping[str, Capability]] = None,
    channels: Optional[Mapping[str, NotificationChannel]] = None,
) -> RunStatus:
    """
    Execute a pipeline run.
    Returns the final run status.
    """
    job = PipelineJob(**job_data)
    repo_info = job.repo_info

    run = PipelineRun(
        run_id=job.run_id,
        build_number=job.build_number,
        branch=normalize_ref(repo_info.get("branch", "")),
        commit_sha=repo_info.get("commit_sha", ""),
    )

    try:
        definition = load_definition_dict(job.config)
    except MalformedDefinition as e:
        logger.error(f"Run {run.run_id} has an invalid pipeline definition: {e}")
        run.fail(f"Invalid pipeline definition: {e}")
        persist(run)
        return run.status

    notifier = Notifier(
        channels if channels is not None else build_channels(settings),
        definition.notifications,
    )

    try:
        binding = EnvironmentResolver(definition.environments, definition.fallback).resolve(run.branch)
    except NoEnvironmentMatch as e:
        logger.error(f"Run {run.run_id}: {e}")
        run.fail(str(e))
        persist(run)
        await notifier.notify(run, definition.name)
        return run.status

    logger.info(f"Starting pipeline run {run.run_id} with {len(definition.steps)} steps")
    report_started(run, binding.name)

    cancel_event = asyncio.Event()
    # The watcher polls on an interval; a request made while queued must win before step one
    if await cancelled_while_queued(run.run_id):
        logger.warning(f"Run {run.run_id} was cancelled while queued")
        cancel_event.set()
    watcher = asyncio.create_task(watch_for_cancel(run.run_id, cancel_event))
    workspace = None

    try:
        clone_url = repo_info.get("clone_url")
        if clone_url and not cancel_event.is_set():
            workspace = await asyncio.to_thread(checkout, clone_url, run.commit_sha, run.run_id)

        engine = ExecutionEngine(
            capabilities if capabilities is not None else build_capabilities(),
            CredentialResolver(definition.credentials),
            listeners=[StatusReporter(run.run_id)],
            cancel_event=cancel_event,
            default_timeout=settings.step_timeout,
            stop_grace=settings.step_stop_grace,
        )
        await engine.run(definition, run, binding, workspace)
    except WorkspaceError as e:
        logger.error(f"Run {run.run_id}: {e}")
        run.fail(str(e))
    except Exception as e:
        logger.exception(f"Run {run.run_id} crashed")
        run.fail(f"Internal error: {e}")
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        if workspace:
            cleanup(workspace)

    persist(run)
    await notifier.notify(run, definition.name)

    logger.info(f"Pipeline run {run.run_id} finished with status: {run.status.value}")
    return run.status
