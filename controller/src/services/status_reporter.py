"""
Report pipeline and step status to database.
"""

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import Optional
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from controller.src.config import get_settings
from controller.src.models import db
from controller.src.models.step import PipelineRun, StepDescriptor, StepResult, StepStatus
from controller.src.services.engine import EngineListener

logger = logging.getLogger(__name__)
settings = get_settings()

@lru_cache()
def get_session_factory() -> sessionmaker:
    # Sync database connection for controller
    engine = create_engine(settings.database_url)
    return sessionmaker(bind=engine)

def update_run_status(
    run_id: str,
    status: str,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
    environment: Optional[str] = None,
    failed_step: Optional[str] = None,
    error: Optional[str] = None,
):
    """Update pipeline run status in database."""
    SessionLocal = get_session_factory()

    with SessionLocal() as session:
        values = {"status": status, "updated_at": datetime.utcnow()}

        if started_at:
            values["started_at"] = started_at
        if finished_at:
            values["finished_at"] = finished_at
        if environment:
            values["environment"] = environment
        if failed_step:
            values["failed_step"] = failed_step
        if error:
            values["error"] = error

        session.execute(
            update(db.PipelineRun)
            .where(db.PipelineRun.id == run_id)
            .values(**values)
        )
        session.commit()
        logger.info(f"Updated run {run_id} status to {status}")

def update_step_status(
    run_id: str,
    step_order: int,
    status: str,
    attempts: Optional[int] = None,
    started_at: Optional[datetime] = None,
):
    """Update pipeline step status in database."""
    SessionLocal = get_session_factory()

    with SessionLocal() as session:
        values = {"status": status, "updated_at": datetime.utcnow()}

        if attempts is not None:
            values["attempts"] = attempts
        if started_at:
            values["started_at"] = started_at

        session.execute(
            update(db.PipelineStep)
            .where(db.PipelineStep.run_id == run_id)
            .where(db.PipelineStep.step_order == step_order)
            .values(**values)
        )
        session.commit()
        logger.debug(f"Updated step {step_order} of run {run_id} to {status}")

def record_step_result(run_id: str, result: StepResult):
    """Persist a finished step into the run log."""
    SessionLocal = get_session_factory()
    outputs = json.loads(json.dumps(result.outputs, default=str))
    outputs.pop("logs", None)

    with SessionLocal() as session:
        session.execute(
            update(db.PipelineStep)
            .where(db.PipelineStep.run_id == run_id)
            .where(db.PipelineStep.step_order == result.ordinal)
            .values(
                status=result.status.value,
                attempts=result.attempts,
                outputs=outputs,
                error=result.error,
                logs=result.logs,
                duration=result.duration,
                started_at=result.started_at,
                finished_at=result.finished_at,
                updated_at=datetime.utcnow(),
            )
        )
        session.commit()

def record_run(run: PipelineRun):
    """Persist the final state of a run."""
    update_run_status(
        run.run_id,
        run.status.value,
        finished_at=run.finished_at,
        environment=run.environment,
        failed_step=run.failed_step,
        error=run.error,
    )

class StatusReporter(EngineListener):
    """Mirror engine transitions and results into the run log."""

    def __init__(self, run_id: str):
        self.run_id = run_id

    def on_transition(self, step: StepDescriptor, status: StepStatus, attempt: int):
        if status == StepStatus.RUNNING and attempt == 1:
            update_step_status(self.run_id, step.ordinal, status.value, attempts=1, started_at=datetime.utcnow())
        elif status in (StepStatus.RUNNING, StepStatus.RETRYING):
            update_step_status(self.run_id, step.ordinal, status.value, attempts=attempt)

    def on_result(self, result: StepResult):
        record_step_result(self.run_id, result)
