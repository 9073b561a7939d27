"""
Conveyor exception hierarchy.
"""

from typing import Optional


class ConveyorError(Exception):
    """Base exception for all Conveyor errors."""
    pass


# Definition-time errors (raised before any step runs)
class MalformedDefinition(ConveyorError):
    """Raised when a pipeline definition is invalid."""
    pass


class NoEnvironmentMatch(ConveyorError):
    """No environment binding (including fallback) matches a branch."""

    def __init__(self, ref: str):
        super().__init__(f"No environment binding matches '{ref}'")
        self.ref = ref


# Credential errors
class CredentialError(ConveyorError):
    """Base exception for credential resolution."""
    pass


class CredentialNotFound(CredentialError):
    pass


class CredentialExpired(CredentialError):
    pass


# Step-time errors
class StepError(ConveyorError):
    """Error raised while executing a step.

    ``retryable`` tells the engine whether another attempt may succeed.
    """

    retryable = True

    def __init__(self, message: str, output: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.output = output
        if retryable is not None:
            self.retryable = retryable


class StepTimeout(StepError):
    pass


class StepExecutionFailed(StepError):
    """The collaborator reported a failure."""
    pass


class GateRejected(StepError):
    """Quality gate did not pass."""
    retryable = False


class DeploymentUnhealthy(StepError):
    """Post-deploy verification failed."""
    pass


class StepAborted(StepError):
    """The run was cancelled while the step was running."""
    retryable = False


# Infrastructure errors
class WorkspaceError(ConveyorError):
    """The repository could not be checked out for a run."""
    pass
