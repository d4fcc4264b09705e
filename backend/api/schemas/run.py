"""Run schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class NodeExecutionResponse(BaseModel):
    """One attempt at executing a node."""

    node_id: str
    node_type: str
    attempt: int
    outcome: str = Field(description="success, failed or skipped")
    error: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    executed_at: datetime

    class Config:
        from_attributes = True


class SubjectNodeExecutionResponse(NodeExecutionResponse):
    """A node attempt with the run it belongs to."""

    run_id: str


class SubjectHistoryResponse(BaseModel):
    subject_id: str
    entries: List[SubjectNodeExecutionResponse]


class RunResponse(BaseModel):
    """Run status."""

    id: str
    workflow_id: str
    workflow_version: int
    definition_id: str
    subject_id: str
    state: str = Field(description="running, suspended, completed, failed or cancelled")
    current_node_id: Optional[str] = None
    resume_at: Optional[datetime] = Field(default=None, description="Wake-up time while suspended")
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    chain_depth: int = 0

    class Config:
        from_attributes = True


class RunDetailResponse(RunResponse):
    """Run status with its node execution history."""

    trigger_event: Optional[Dict[str, Any]] = None
    history: List[NodeExecutionResponse] = Field(default_factory=list)


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int
    page: int
    per_page: int


class ManualTriggerResponse(BaseModel):
    """Outcome of a manual trigger."""

    started: bool = Field(description="False when the contact already has an active run")
    run: Optional[RunResponse] = None
