"""
Pipeline definition and execution models.
"""

import fnmatch
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    WARNING = "succeeded_with_warning"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNSTABLE = "unstable"
    ABORTED = "aborted"


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = 0
    delay: float = 0.0
    backoff: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.delay * (self.backoff ** (attempt - 1))


class StepCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    branches: List[str] = []

    def matches(self, branch: str) -> bool:
        if not self.enabled:
            return False
        if not self.branches:
            return True
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in self.branches)


class StepDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ordinal: int
    uses: str
    params: Dict[str, Any] = {}
    image: Optional[str] = None
    commands: List[str] = []
    credentials: List[str] = []
    outputs: List[str] = []
    retry: RetryPolicy = RetryPolicy()
    timeout: Optional[int] = None
    continue_on_failure: bool = False
    when: StepCondition = StepCondition()


class EnvironmentBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern: str
    name: str
    namespace: str
    manifest: Optional[str] = None
    image_tag: str = "${{ run.build_number }}"


class CredentialSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    source: str = "env"  # env | kubernetes
    variable: Optional[str] = None
    fields: Dict[str, str] = {}
    secret: Optional[str] = None
    namespace: Optional[str] = None
    ttl: Optional[int] = None


class NotificationTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: str  # email | slack
    recipients: List[str] = []


class PipelineDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "Unnamed Pipeline"
    env: Dict[str, str] = {}
    credentials: Dict[str, CredentialSpec] = {}
    environments: List[EnvironmentBinding] = []
    fallback: Optional[EnvironmentBinding] = None
    notifications: List[NotificationTarget] = []
    steps: List[StepDescriptor]


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ordinal: int
    status: StepStatus
    outputs: Dict[str, Any] = {}
    attempts: int = 0
    duration: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    logs: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.SUCCEEDED, StepStatus.WARNING)


class PipelineRun(BaseModel):
    """One trigger-to-completion execution of a pipeline definition."""

    run_id: str
    build_number: int = 0
    branch: str
    commit_sha: str = ""
    status: RunStatus = RunStatus.RUNNING
    environment: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    results: List[StepResult] = []
    notified: bool = False

    def record(self, result: StepResult):
        """Append a step result; results must arrive in execution order."""
        if self.results and result.ordinal <= self.results[-1].ordinal:
            raise ValueError(
                f"Result for step {result.ordinal} recorded after step {self.results[-1].ordinal}"
            )
        self.results.append(result)

        if result.status in (StepStatus.FAILED, StepStatus.ABORTED) and self.failed_step is None:
            self.failed_step = result.name
            self.error = result.error

    def result_for(self, name: str) -> Optional[StepResult]:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def fail(self, error: str, step: Optional[str] = None):
        """Finalize a run that failed before (or outside of) step execution."""
        self.failed_step = step
        self.error = error
        self.status = RunStatus.FAILED
        self.finished_at = datetime.utcnow()

    def finalize(self, aborted: bool = False) -> RunStatus:
        statuses = {r.status for r in self.results}

        if aborted or StepStatus.ABORTED in statuses:
            self.status = RunStatus.ABORTED
        elif StepStatus.FAILED in statuses:
            self.status = RunStatus.FAILED
        elif StepStatus.WARNING in statuses:
            self.status = RunStatus.UNSTABLE
        else:
            self.status = RunStatus.SUCCEEDED

        self.finished_at = datetime.utcnow()
        return self.status


class PipelineJob(BaseModel):
    run_id: str
    build_number: int = 0
    config: Dict[str, Any]
    repo_info: Dict[str, Any]
    queued_at: str
