"""
Deployment collaborators: GitOps repository, ArgoCD, Kubernetes, HTTP health.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import time
from typing import Any, Dict, List, Tuple
from urllib.parse import quote, urlsplit, urlunsplit

import httpx
from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.errors import DeploymentUnhealthy, StepExecutionFailed, StepTimeout
from controller.src.k8s import get_apps_api, get_core_api
from controller.src.tools.base import StepContext
from controller.src.tools.process import run_command

logger = logging.getLogger(__name__)
settings = get_settings()


# GitOps

def set_image_tag(manifest: str, image: str, tag: str) -> Tuple[str, int]:
    """Point every ``image: <image>[:tag]`` line at ``tag``; returns (text, replacements)."""
    pattern = re.compile(
        r"^([ \t]*-?[ \t]*image:[ \t]*[\"']?)" + re.escape(image) + r"(?::[\w][\w.\-]*)?([\"']?[ \t]*)$",
        re.MULTILINE,
    )
    return pattern.subn(lambda m: f"{m.group(1)}{image}:{tag}{m.group(2)}", manifest)


def authenticated_url(repo_url: str, token: str) -> str:
    parts = urlsplit(repo_url)
    netloc = f"x-access-token:{quote(token, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def gitops_update(ctx: StepContext) -> Dict[str, Any]:
    """updateManifest(repoRef, path, newImageTag, credential) -> commitRef"""
    repo_url = ctx.param("repo_url")
    branch = ctx.param("branch", "main")
    path = ctx.param("path", ctx.target.get("manifest"))
    image = ctx.param("image")
    tag = str(ctx.param("tag", ctx.target.get("image_tag")))
    token = ctx.credential(ctx.param("credential", None)).value
    secrets = ctx.secrets()
    git = settings.git_bin

    if not path:
        raise StepExecutionFailed("No manifest path given or bound to the environment", retryable=False)

    temp_dir = tempfile.mkdtemp(prefix="conveyor_gitops_")
    repo_path = os.path.join(temp_dir, "repo")

    try:
        run_command(
            [git, "clone", "--depth", "1", "--branch", branch, authenticated_url(repo_url, token), repo_path],
            timeout=ctx.remaining(),
            secrets=secrets,
            cancel=ctx.cancel,
        )

        manifest_path = os.path.join(repo_path, path)
        if not os.path.isfile(manifest_path):
            raise StepExecutionFailed(f"Manifest {path} not found in {repo_url}", retryable=False)

        with open(manifest_path) as f:
            updated, count = set_image_tag(f.read(), image, tag)

        if count == 0:
            raise StepExecutionFailed(f"Image {image} not referenced in {path}", retryable=False)

        with open(manifest_path, "w") as f:
            f.write(updated)

        status = run_command([git, "status", "--porcelain"], cwd=repo_path, timeout=30)
        if status.strip():
            run_command(
                [
                    git, "-c", "user.name=conveyor", "-c", "user.email=conveyor@localhost",
                    "commit", "-am", f"Deploy {image}:{tag} (build {ctx.build_number})",
                ],
                cwd=repo_path,
                timeout=60,
            )
            run_command([git, "push", "origin", branch], cwd=repo_path, timeout=ctx.remaining(), secrets=secrets, cancel=ctx.cancel)
        else:
            logger.info(f"{path} already points at {image}:{tag}")

        commit = run_command([git, "rev-parse", "HEAD"], cwd=repo_path, timeout=30).strip()
        return {"commit_ref": commit}
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


# ArgoCD

def _argocd_args(ctx: StepContext) -> List[str]:
    return [
        "--server", ctx.param("server", settings.argocd_server),
        "--auth-token", ctx.credential(ctx.param("credential", None)).value,
        "--grpc-web",
    ]


def argocd_sync(ctx: StepContext) -> Dict[str, Any]:
    """sync(appName, credential) -> syncId"""
    app = ctx.param("app")
    common = _argocd_args(ctx)

    run_command(
        [settings.argocd_bin, "app", "sync", app, *common],
        timeout=ctx.remaining(),
        secrets=ctx.secrets(),
        cancel=ctx.cancel,
    )
    output = run_command(
        [settings.argocd_bin, "app", "get", app, "-o", "json", *common],
        timeout=ctx.remaining(),
        secrets=ctx.secrets(),
        cancel=ctx.cancel,
    )

    revision = json.loads(output).get("status", {}).get("sync", {}).get("revision", "")
    return {"sync_id": f"{app}@{revision}" if revision else app}


def argocd_wait(ctx: StepContext) -> Dict[str, Any]:
    """waitHealthy(appName, timeout) -> healthy|unhealthy"""
    app = ctx.param("app")
    wait = int(min(float(ctx.param("wait", 300)), ctx.remaining()))

    try:
        run_command(
            [settings.argocd_bin, "app", "wait", app, "--health", "--timeout", str(wait), *_argocd_args(ctx)],
            timeout=wait + 30,
            secrets=ctx.secrets(),
            cancel=ctx.cancel,
        )
    except StepExecutionFailed as e:
        raise DeploymentUnhealthy(f"Application {app} is not healthy: {e}", output=e.output)

    return {"health": "healthy"}


# Kubernetes

def kube_apply(ctx: StepContext) -> Dict[str, Any]:
    """applyManifest(manifest, credential)"""
    manifest = ctx.param("manifest", ctx.target.get("manifest"))
    namespace = ctx.param("namespace", ctx.target.get("namespace"))
    if not manifest:
        raise StepExecutionFailed("No manifest given or bound to the environment", retryable=False)
    if ctx.workspace and not os.path.isabs(manifest):
        manifest = os.path.join(ctx.workspace, manifest)

    args = [settings.kubectl_bin, "apply", "-f", manifest, "-n", namespace]

    kubeconfig = None
    if ctx.credentials:
        # Kubeconfig lives on disk only while kubectl runs
        fd, kubeconfig = tempfile.mkstemp(prefix="conveyor_kube_")
        with os.fdopen(fd, "w") as f:
            f.write(ctx.credential(ctx.param("credential", None)).value)
        args += ["--kubeconfig", kubeconfig]

    try:
        output = run_command(args, timeout=ctx.remaining(), secrets=ctx.secrets(), cancel=ctx.cancel)
    finally:
        if kubeconfig:
            os.remove(kubeconfig)

    return {"applied": [line for line in output.splitlines() if line.strip()]}


def rollout_complete(deployment) -> bool:
    """Same readiness rule as ``kubectl rollout status``."""
    spec_replicas = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    status = deployment.status
    if status is None:
        return False
    if (status.observed_generation or 0) < (deployment.metadata.generation or 0):
        return False
    return (
        (status.updated_replicas or 0) >= spec_replicas
        and (status.replicas or 0) <= spec_replicas
        and (status.available_replicas or 0) >= spec_replicas
    )


def kube_rollout(ctx: StepContext) -> Dict[str, Any]:
    """rolloutStatus(deployment, namespace, timeout) -> ready|timeout"""
    name = ctx.param("deployment")
    namespace = ctx.param("namespace", ctx.target.get("namespace"))
    wait = min(float(ctx.param("wait", 120)), ctx.remaining())
    poll = float(ctx.param("poll_interval", 2))
    apps_v1 = get_apps_api()

    deadline = time.monotonic() + wait
    while True:
        try:
            deployment = apps_v1.read_namespaced_deployment_status(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise DeploymentUnhealthy(f"Deployment {namespace}/{name} not found")
            raise

        if rollout_complete(deployment):
            logger.info(f"Deployment {namespace}/{name} rolled out")
            return {"rollout": "ready"}

        if time.monotonic() >= deadline:
            raise StepTimeout(f"Deployment {namespace}/{name} not ready after {wait:.0f}s")

        ctx.sleep(poll)


def kube_pods(ctx: StepContext) -> Dict[str, Any]:
    """getPods(selector, namespace) -> podList"""
    selector = ctx.param("selector")
    namespace = ctx.param("namespace", ctx.target.get("namespace"))

    pods = get_core_api().list_namespaced_pod(namespace=namespace, label_selector=selector)
    listing = [
        {"name": pod.metadata.name, "phase": pod.status.phase if pod.status else "Unknown"}
        for pod in pods.items
    ]

    if ctx.param("require_running", True) and not any(p["phase"] == "Running" for p in listing):
        raise DeploymentUnhealthy(f"No running pods match '{selector}' in {namespace}")

    return {"pods": listing}


# HTTP

def http_check(ctx: StepContext) -> Dict[str, Any]:
    """GET a health endpoint and compare the status code."""
    url = ctx.param("url")
    expected = int(ctx.param("expect_status", 200))

    try:
        response = httpx.get(url, timeout=min(30.0, ctx.remaining()), follow_redirects=True)
    except httpx.HTTPError as e:
        raise DeploymentUnhealthy(f"{url} unreachable: {e}")

    if response.status_code != expected:
        raise DeploymentUnhealthy(f"{url} returned {response.status_code}, expected {expected}")

    return {"status_code": response.status_code}
