"""
Container steps - run ``image`` + ``commands`` as a Kubernetes Job.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.errors import StepAborted, StepExecutionFailed, StepTimeout
from controller.src.k8s import (
    build_job,
    delete_job,
    env_var_name,
    get_batch_api,
    get_job_status,
)
from controller.src.services.log_collector import collect_logs
from controller.src.tools.base import StepContext
from controller.src.tools.process import mask

logger = logging.getLogger(__name__)
settings = get_settings()


def run_job(ctx: StepContext) -> Dict[str, Any]:
    """
    Execute a container step.
    Credentials are exposed to the container as <NAME>_<FIELD> variables and
    the Job is deleted as soon as the step is over.
    """
    batch_v1 = get_batch_api()
    namespace = ctx.param("namespace", settings.k8s_namespace)

    env_vars = {key: str(value) for key, value in ctx.param("env", {}).items()}
    for name, handle in ctx.credentials.items():
        for field in handle.fields():
            env_vars[env_var_name(name, field)] = handle.get(field)

    job = build_job(
        run_id=ctx.run_id,
        step_order=ctx.step.ordinal,
        step_name=ctx.step.name,
        image=ctx.step.image,
        commands=ctx.step.commands,
        env_vars=env_vars,
        timeout=ctx.timeout,
        attempt=ctx.attempt,
        namespace=namespace,
    )

    job_name = job.metadata.name
    logger.info(f"Creating job {job_name}")

    try:
        batch_v1.create_namespaced_job(namespace=namespace, body=job)
    except ApiException as e:
        if e.status == 409:
            # Job already exists, delete and recreate
            logger.warning(f"Job {job_name} already exists, deleting...")
            delete_job(job_name, namespace)
            time.sleep(2)
            batch_v1.create_namespaced_job(namespace=namespace, body=job)
        else:
            raise

    try:
        status = wait_for_job(job_name, namespace, ctx.remaining(), cancel=ctx.cancel)
        logs = mask(collect_logs(job_name, namespace), ctx.secrets())
    finally:
        # The pod holds the credentials in its environment
        delete_job(job_name, namespace)

    if status == "aborted":
        raise StepAborted(f"Job {job_name} stopped: step interrupted", output=logs)
    if status == "timeout":
        raise StepTimeout(f"Job {job_name} timed out after {ctx.timeout}s", output=logs)
    if status != "succeeded":
        raise StepExecutionFailed(f"Job {job_name} failed", output=logs)

    return {"logs": logs}


def wait_for_job(
    job_name: str,
    namespace: str,
    timeout: float,
    poll: float = 2.0,
    cancel: Optional[threading.Event] = None,
) -> str:
    """
    Wait for a job to complete.
    Returns 'succeeded', 'failed', 'timeout' or 'aborted' (``cancel`` was set).
    """
    cancel = cancel or threading.Event()
    batch_v1 = get_batch_api()
    start_time = time.time()

    while True:
        if time.time() - start_time > timeout:
            logger.error(f"Job {job_name} timed out after {timeout:.0f}s")
            return "timeout"

        try:
            job = batch_v1.read_namespaced_job(name=job_name, namespace=namespace)
            status = get_job_status(job)

            if status in ("succeeded", "failed"):
                return status
            wait = poll

        except ApiException as e:
            logger.error(f"Error checking job status: {e}")
            wait = poll * 2

        if cancel.wait(wait):
            logger.warning(f"Job {job_name} interrupted")
            return "aborted"
