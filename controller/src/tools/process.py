"""
Run external tool CLIs.
"""

import logging
import os
import subprocess
import threading
import time
from typing import Dict, Iterable, List, Optional

from controller.src.errors import StepAborted, StepExecutionFailed, StepTimeout

logger = logging.getLogger(__name__)

MASK = "****"
OUTPUT_TAIL = 4000
POLL_INTERVAL = 0.5


def mask(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text


def run_command(
    args: List[str],
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    input: Optional[str] = None,
    secrets: Iterable[str] = (),
    cancel: Optional[threading.Event] = None,
) -> str:
    """
    Run a command and return its combined output.
    Raises StepTimeout / StepExecutionFailed, or StepAborted once ``cancel`` is
    set (the process is killed first); output is masked for secrets.
    """
    secrets = list(secrets)
    shown = mask(" ".join(args), secrets)
    logger.info(f"Running: {shown}")

    try:
        process = subprocess.Popen(
            args,
            cwd=cwd,
            env={**os.environ, **env} if env else None,
            stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError:
        raise StepExecutionFailed(f"'{args[0]}' not found", retryable=False)

    deadline = time.monotonic() + timeout if timeout is not None else None
    pending_input = input

    while True:
        wait = POLL_INTERVAL
        if deadline is not None:
            wait = max(min(wait, deadline - time.monotonic()), 0)
        try:
            stdout, stderr = process.communicate(input=pending_input, timeout=wait)
            break
        except subprocess.TimeoutExpired:
            # communicate() keeps what was already sent; input may only be passed once
            pending_input = None

        if cancel is not None and cancel.is_set():
            _kill(process)
            raise StepAborted(f"'{args[0]}' stopped: step interrupted")
        if deadline is not None and time.monotonic() >= deadline:
            _kill(process)
            raise StepTimeout(f"'{args[0]}' timed out after {timeout:.0f}s")

    output = mask((stdout or "") + (stderr or ""), secrets)

    if process.returncode != 0:
        raise StepExecutionFailed(
            f"'{shown}' exited with code {process.returncode}: {output[-500:].strip()}",
            output=output[-OUTPUT_TAIL:],
        )

    return output


def _kill(process: subprocess.Popen):
    process.kill()
    process.communicate()
