from controller.src.models.step import (
    StepStatus,
    RunStatus,
    RetryPolicy,
    StepCondition,
    StepDescriptor,
    EnvironmentBinding,
    CredentialSpec,
    NotificationTarget,
    PipelineDefinition,
    StepResult,
    PipelineRun,
    PipelineJob,
)

__all__ = [
    "StepStatus",
    "RunStatus",
    "RetryPolicy",
    "StepCondition",
    "StepDescriptor",
    "EnvironmentBinding",
    "CredentialSpec",
    "NotificationTarget",
    "PipelineDefinition",
    "StepResult",
    "PipelineRun",
    "PipelineJob",
]
