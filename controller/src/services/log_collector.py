"""
Log collection for container steps.

A step Job runs exactly one pod per attempt, but the pod may never get as far
as producing output (bad image, missing pull secret). In that case the
container's waiting reason is the only useful thing to show in the run log.
"""

import logging
from typing import List, Optional

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s.client import get_core_api
from controller.src.k8s.job_builder import STEP_CONTAINER

logger = logging.getLogger(__name__)
settings = get_settings()

TAIL_LINES = 1000


def waiting_reason(pod) -> Optional[str]:
    """'ImagePullBackOff: Back-off pulling image ...' for a pod stuck before start."""
    statuses = (pod.status.container_statuses or []) if pod.status else []
    for status in statuses:
        if status.name != STEP_CONTAINER or status.state is None:
            continue
        waiting = status.state.waiting
        if waiting and waiting.reason:
            return f"{waiting.reason}: {waiting.message}" if waiting.message else waiting.reason
    return None


def list_step_pods(job_name: str, namespace: str) -> List:
    try:
        pods = get_core_api().list_namespaced_pod(
            namespace=namespace,
            label_selector=f"job-name={job_name}",
        )
    except ApiException as e:
        logger.error(f"Failed to list pods for job {job_name}: {e}")
        return []
    return sorted(pods.items, key=lambda pod: pod.metadata.creation_timestamp or 0)


def collect_logs(job_name: str, namespace: Optional[str] = None) -> str:
    """Return the step container's output, or why there is none."""
    namespace = namespace or settings.k8s_namespace
    pods = list_step_pods(job_name, namespace)
    if not pods:
        return f"No pod was scheduled for job {job_name}"

    pod = pods[-1]
    reason = waiting_reason(pod)
    if reason:
        return f"Pod {pod.metadata.name} did not start: {reason}"

    try:
        return get_core_api().read_namespaced_pod_log(
            name=pod.metadata.name,
            namespace=namespace,
            container=STEP_CONTAINER,
            tail_lines=TAIL_LINES,
        )
    except ApiException as e:
        # 400 means the container never ran
        if e.status == 400:
            return f"Pod {pod.metadata.name} did not start"
        logger.error(f"Failed to collect logs for {pod.metadata.name}: {e}")
        return f"Error collecting logs: {e.reason}"
