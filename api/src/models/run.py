from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID

class StepResponse(BaseModel):
    id: UUID
    name: str
    uses: str
    status: str
    step_order: int
    attempts: int = 0
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunResponse(BaseModel):
    id: UUID
    build_number: int
    commit_sha: str
    branch: str
    environment: Optional[str] = None
    status: str
    triggered_by: Optional[str] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True
