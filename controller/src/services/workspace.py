"""
Per-run source checkout.
"""

import logging
import os
import shutil
import subprocess
import tempfile

from controller.src.config import get_settings
from controller.src.errors import WorkspaceError

logger = logging.getLogger(__name__)
settings = get_settings()


def checkout(clone_url: str, commit_sha: str = "", run_id: str = "") -> str:
    """
    Clone repository into a fresh directory under ``workspace_root``.
    Returns path to the checked out repo.
    """
    os.makedirs(settings.workspace_root, exist_ok=True)
    temp_dir = tempfile.mkdtemp(prefix=f"run_{run_id[:8]}_" if run_id else "run_", dir=settings.workspace_root)
    repo_path = os.path.join(temp_dir, "repo")

    try:
        subprocess.run(
            [settings.git_bin, "clone", "--depth", "1", clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=settings.clone_timeout,
        )

        # Checkout specific commit if provided
        if commit_sha:
            subprocess.run(
                [settings.git_bin, "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60,
            )
            subprocess.run(
                [settings.git_bin, "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30,
            )
    except subprocess.TimeoutExpired:
        cleanup(repo_path)
        raise WorkspaceError(f"Repository clone timed out after {settings.clone_timeout}s")
    except subprocess.CalledProcessError as e:
        cleanup(repo_path)
        raise WorkspaceError(f"Failed to clone repository: {e.stderr.decode(errors='replace')}")

    logger.info(f"Checked out {commit_sha or 'HEAD'} into {repo_path}")
    return repo_path


def cleanup(repo_path: str):
    """Remove a checkout and its parent temp directory."""
    if not repo_path:
        return
    parent = os.path.dirname(repo_path)
    try:
        if os.path.exists(parent):
            shutil.rmtree(parent)
    except OSError as e:
        logger.warning(f"Failed to clean up workspace {parent}: {e}")
