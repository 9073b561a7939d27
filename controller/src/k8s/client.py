"""
Kubernetes API access for the controller.

Credentials (Secrets), container steps (Jobs) and rollout checks (Deployments)
all share one ApiClient, created on first use.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import logging

from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

API_CLASSES = {
    "batch": client.BatchV1Api,
    "core": client.CoreV1Api,
    "apps": client.AppsV1Api,
}

_apis = {}

def init_k8s_client() -> bool:
    """Load cluster config and build the API objects. Returns False if the cluster is unreachable."""
    try:
        if settings.k8s_in_cluster:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        else:
            config.load_kube_config()
            logger.info("Loaded kubeconfig")

        api_client = client.ApiClient()
        apis = {kind: api_class(api_client) for kind, api_class in API_CLASSES.items()}
        apis["core"].list_namespace(limit=1)
    except Exception as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        return False

    _apis.clear()
    _apis.update(apis)
    logger.info("Kubernetes client initialized")
    return True

def _api(kind: str):
    if kind not in _apis and not init_k8s_client():
        raise RuntimeError("Kubernetes API is not available")
    return _apis[kind]

def get_batch_api() -> client.BatchV1Api:
    return _api("batch")

def get_core_api() -> client.CoreV1Api:
    return _api("core")

def get_apps_api() -> client.AppsV1Api:
    return _api("apps")

def ensure_namespace(namespace: str = None):
    """Create the step namespace if it does not exist yet."""
    namespace = namespace or settings.k8s_namespace
    core_v1 = get_core_api()

    try:
        core_v1.read_namespace(name=namespace)
        logger.info(f"Namespace '{namespace}' exists")
    except ApiException as e:
        if e.status != 404:
            raise
        core_v1.create_namespace(
            body=client.V1Namespace(
                metadata=client.V1ObjectMeta(
                    name=namespace,
                    labels={"app.kubernetes.io/managed-by": "conveyor"},
                )
            )
        )
        logger.info(f"Created namespace '{namespace}'")

def delete_job(job_name: str, namespace: str = None):
    """Delete a step Job together with its pods; a Job that is already gone is fine."""
    namespace = namespace or settings.k8s_namespace

    try:
        get_batch_api().delete_namespaced_job(
            name=job_name,
            namespace=namespace,
            body=client.V1DeleteOptions(propagation_policy="Foreground"),
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete job {job_name}: {e}")
