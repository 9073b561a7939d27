from api.src.models.pipeline import Repository, PipelineRun, PipelineStep
from api.src.models.run import (
    PipelineRunResponse,
    StepResponse,
    RepositoryResponse
)

__all__ = [
    "Repository",
    "PipelineRun",
    "PipelineStep",
    "PipelineRunResponse",
    "StepResponse",
    "RepositoryResponse"
]
