"""
Collaborator adapter contract.

A capability is a plain callable taking a StepContext and returning the
step's outputs. It runs in a worker thread and may block, but long waits go
through ``ctx.sleep`` or check ``ctx.cancel`` so that a timed out or cancelled
step stops before its credentials are released.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from controller.src.errors import StepAborted, StepExecutionFailed
from controller.src.models.step import StepDescriptor
from controller.src.services.credentials import CredentialHandle

_MISSING = object()


@dataclass
class StepContext:
    run_id: str
    build_number: int
    step: StepDescriptor
    params: Dict[str, Any]
    timeout: int
    target: Dict[str, Any] = field(default_factory=dict)
    credentials: Dict[str, CredentialHandle] = field(default_factory=dict)
    workspace: Optional[str] = None
    attempt: int = 1
    started: float = field(default_factory=time.monotonic)
    # Set by the engine on timeout or cancel
    cancel: threading.Event = field(default_factory=threading.Event)

    def param(self, key: str, default: Any = _MISSING) -> Any:
        value = self.params.get(key, default)
        if value is _MISSING or (value is None and default is _MISSING):
            raise StepExecutionFailed(
                f"Step '{self.step.name}' missing parameter '{key}'", retryable=False
            )
        return value

    def credential(self, name: Optional[str] = None) -> CredentialHandle:
        """The named credential, or the step's only credential."""
        if name is None:
            if len(self.credentials) != 1:
                raise StepExecutionFailed(
                    f"Step '{self.step.name}' needs exactly one credential", retryable=False
                )
            return next(iter(self.credentials.values()))

        if name not in self.credentials:
            raise StepExecutionFailed(
                f"Step '{self.step.name}' did not declare credential '{name}'", retryable=False
            )
        return self.credentials[name]

    def secrets(self) -> List[str]:
        values = []
        for handle in self.credentials.values():
            values.extend(handle.secrets())
        return values

    def remaining(self) -> float:
        """Seconds left before the step's timeout."""
        return max(self.timeout - (time.monotonic() - self.started), 1.0)

    def sleep(self, seconds: float):
        """Wait between polls; raises StepAborted once the step is interrupted."""
        if self.cancel.wait(seconds):
            raise StepAborted(f"Step '{self.step.name}' interrupted")


Capability = Callable[[StepContext], Dict[str, Any]]
