"""
Build, image and artifact collaborators: Maven, Docker, Nexus.
"""

import glob
import logging
import os
import re
from typing import Any, Dict, Optional

import httpx

from controller.src.config import get_settings
from controller.src.errors import StepExecutionFailed
from controller.src.tools.base import StepContext
from controller.src.tools.process import run_command

logger = logging.getLogger(__name__)
settings = get_settings()

DIGEST = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


def _path(ctx: StepContext, relative: str) -> str:
    if os.path.isabs(relative) or not ctx.workspace:
        return relative
    return os.path.join(ctx.workspace, relative)


def find_artifact(target_dir: str, packaging: str = "jar") -> Optional[str]:
    """Pick the built artifact, ignoring sources/javadoc/original jars."""
    candidates = sorted(
        path for path in glob.glob(os.path.join(target_dir, f"*.{packaging}"))
        if not re.search(r"-(sources|javadoc|tests)\.", os.path.basename(path))
        and not os.path.basename(path).startswith("original-")
    )
    return candidates[0] if candidates else None


def maven_build(ctx: StepContext) -> Dict[str, Any]:
    """build(project) -> {artifact, test_report}"""
    project = _path(ctx, ctx.param("project", "."))
    goals = ctx.param("goals", "clean package").split()

    run_command(
        [settings.mvn_bin, "-B", *goals, *ctx.param("args", [])],
        cwd=project,
        timeout=ctx.remaining(),
        secrets=ctx.secrets(),
        cancel=ctx.cancel,
    )

    target_dir = os.path.join(project, "target")
    artifact = find_artifact(target_dir, ctx.param("packaging", "jar"))
    if artifact is None:
        raise StepExecutionFailed(f"No artifact found in {target_dir}", retryable=False)

    reports = os.path.join(target_dir, "surefire-reports")
    return {
        "artifact": artifact,
        "test_report": reports if os.path.isdir(reports) else None,
    }


def docker_build(ctx: StepContext) -> Dict[str, Any]:
    """buildImage(context, tag) -> imageRef"""
    image = ctx.param("image")
    tag = ctx.param("tag", ctx.target.get("image_tag"))
    image_ref = f"{image}:{tag}"
    build_context = _path(ctx, ctx.param("context", "."))

    args = [settings.docker_bin, "build", "-t", image_ref]
    dockerfile = ctx.param("dockerfile", "")
    if dockerfile:
        args += ["-f", _path(ctx, dockerfile)]
    for key, value in ctx.param("build_args", {}).items():
        args += ["--build-arg", f"{key}={value}"]
    args.append(build_context)

    run_command(args, timeout=ctx.remaining(), secrets=ctx.secrets(), cancel=ctx.cancel)
    return {"image_ref": image_ref}


def docker_push(ctx: StepContext) -> Dict[str, Any]:
    """push(imageRef, registry, credential) -> ack"""
    image_ref = ctx.param("image")
    registry = ctx.param("registry")
    credential = ctx.credential(ctx.param("credential", None))

    if not image_ref.startswith(f"{registry}/"):
        remote_ref = f"{registry}/{image_ref}"
        run_command([settings.docker_bin, "tag", image_ref, remote_ref], timeout=ctx.remaining(), cancel=ctx.cancel)
    else:
        remote_ref = image_ref

    run_command(
        [settings.docker_bin, "login", registry, "-u", credential.get("username"), "--password-stdin"],
        input=credential.get("password"),
        timeout=ctx.remaining(),
        secrets=ctx.secrets(),
        cancel=ctx.cancel,
    )
    try:
        output = run_command(
            [settings.docker_bin, "push", remote_ref],
            timeout=ctx.remaining(),
            secrets=ctx.secrets(),
            cancel=ctx.cancel,
        )
    finally:
        run_command([settings.docker_bin, "logout", registry], timeout=30)

    match = DIGEST.search(output)
    return {"image_ref": remote_ref, "digest": match.group(1) if match else None}


def nexus_publish(ctx: StepContext) -> Dict[str, Any]:
    """publish(artifact, credential) -> ack"""
    artifact = _path(ctx, ctx.param("artifact"))
    repository_url = ctx.param("repository_url").rstrip("/")
    remote_path = ctx.param("path", os.path.basename(artifact)).lstrip("/")
    credential = ctx.credential(ctx.param("credential", None))

    if not os.path.isfile(artifact):
        raise StepExecutionFailed(f"Artifact {artifact} does not exist", retryable=False)

    url = f"{repository_url}/{remote_path}"
    logger.info(f"Uploading {artifact} to {url}")

    with open(artifact, "rb") as f:
        try:
            response = httpx.put(
                url,
                content=f.read(),
                auth=(credential.get("username"), credential.get("password")),
                timeout=ctx.remaining(),
            )
        except httpx.HTTPError as e:
            raise StepExecutionFailed(f"Upload to {url} failed: {e}")

    if response.status_code >= 400:
        raise StepExecutionFailed(
            f"Upload to {url} rejected: {response.status_code} {response.text[:200]}",
            retryable=response.status_code >= 500,
        )

    return {"artifact_url": url}
