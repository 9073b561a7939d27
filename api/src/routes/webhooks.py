"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Any, Dict, Optional, Tuple
import asyncio
import logging

from api.src.db.database import get_db
from api.src.models.pipeline import Repository, PipelineRun, PipelineStep
from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    fetch_pipeline_config,
)
from api.src.services.queue import enqueue_pipeline_run
from controller.src.errors import MalformedDefinition, WorkspaceError
from controller.src.models.step import PipelineDefinition
from controller.src.services.definition_loader import load_definition_dict
from controller.src.services.workspace import checkout, cleanup

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

def read_definition(repo_path: str) -> Optional[Tuple[Dict[str, Any], PipelineDefinition]]:
    """
    Load and validate the definition file of a checkout.
    Returns None when the repository has no definition file.
    """
    config = fetch_pipeline_config(repo_path)
    if config is None:
        return None
    return config, load_definition_dict(config)

async def next_build_number(db: AsyncSession, repository_id) -> int:
    result = await db.execute(
        select(func.max(PipelineRun.build_number))
        .where(PipelineRun.repository_id == repository_id)
    )
    return (result.scalar() or 0) + 1

async def process_push_event(
    payload: dict,
    db: AsyncSession,
):
    """Process GitHub push event and create pipeline run."""

    webhook_data = parse_webhook_payload(payload)

    if webhook_data["deleted"]:
        return {"status": "skipped", "reason": "Branch deleted"}

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    # Validate the definition before touching the database or the queue
    repo_path = None
    try:
        repo_path = await asyncio.to_thread(
            checkout,
            webhook_data["clone_url"],
            webhook_data["commit_sha"],
        )
        loaded = read_definition(repo_path)
    except MalformedDefinition as e:
        logger.error(f"Invalid pipeline definition in {webhook_data['repo_full_name']}: {e}")
        return {"status": "error", "reason": str(e)}
    except WorkspaceError as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}
    finally:
        if repo_path:
            cleanup(repo_path)

    if loaded is None:
        logger.info(f"No pipeline config found in {webhook_data['repo_full_name']}")
        return {"status": "skipped", "reason": "No pipeline configuration found"}

    config, definition = loaded

    # Get or create repository
    repo_query = select(Repository).where(
        Repository.full_name == webhook_data["repo_full_name"]
    )
    result = await db.execute(repo_query)
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            name=webhook_data["repo_name"],
            full_name=webhook_data["repo_full_name"],
            clone_url=webhook_data["clone_url"],
        )
        db.add(repository)
        await db.flush()

    build_number = await next_build_number(db, repository.id)

    pipeline_run = PipelineRun(
        repository_id=repository.id,
        build_number=build_number,
        commit_sha=webhook_data["commit_sha"],
        branch=webhook_data["branch"],
        status="queued",
        triggered_by=webhook_data["pusher"],
        config=config,
    )
    db.add(pipeline_run)
    await db.flush()

    for step in definition.steps:
        db.add(PipelineStep(
            run_id=pipeline_run.id,
            name=step.name,
            uses=step.uses,
            status="pending",
            step_order=step.ordinal,
        ))

    await db.commit()

    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        build_number=build_number,
        config=config,
        repo_info=webhook_data,
    )

    logger.info(f"Pipeline run {pipeline_run.id} (#{build_number}) created and queued")

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "build_number": build_number,
        "steps": len(definition.steps),
    }

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    # Get raw body for signature verification
    body = await request.body()

    if x_hub_signature_256:
        if not verify_signature(body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        return await process_push_event(payload, db)

    # Ignore other events
    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }
