"""Workflow schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class WorkflowCreate(BaseModel):
    """Request to create a workflow."""

    name: str = Field(min_length=1, max_length=255, description="Workflow name")
    description: Optional[str] = Field(default="", description="Workflow description")
    graph: Optional[Dict[str, Any]] = Field(default=None, description="Graph JSON ({nodes, edges})")


class WorkflowGraphUpdate(BaseModel):
    """Request to save a workflow's draft graph.

    Saving a published workflow starts the next version as a draft.
    """

    graph: Dict[str, Any] = Field(description="Graph JSON ({nodes, edges})")
    name: Optional[str] = Field(default=None, min_length=1, max_length=255, description="Workflow name")
    description: Optional[str] = Field(default=None, description="Workflow description")


class WorkflowResponse(BaseModel):
    """One version of a workflow."""

    id: str = Field(description="Definition ID of this version")
    workflow_id: str = Field(description="Stable workflow ID shared by every version")
    name: str = Field(description="Workflow name")
    description: str = Field(description="Workflow description")
    version: int = Field(description="Version number")
    status: str = Field(description="draft, published or archived")
    trigger_type: Optional[str] = Field(default=None, description="Event type of the trigger, once published")
    graph: Dict[str, Any] = Field(description="Graph JSON")
    published_at: Optional[datetime] = Field(default=None, description="When this version was published")
    created_by: str = Field(description="User ID who saved this version")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")

    class Config:
        from_attributes = True


class WorkflowListResponse(BaseModel):
    """Paginated list of workflows (latest version of each)."""

    workflows: List[WorkflowResponse] = Field(description="List of workflows")
    total: int = Field(description="Total number of workflows")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


class WorkflowVersionsResponse(BaseModel):
    """Every version of one workflow, newest first."""

    workflow_id: str
    versions: List[WorkflowResponse]


class GraphErrorResponse(BaseModel):
    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error")
    node_id: Optional[str] = Field(default=None, description="Offending node, when there is one")


class ValidationResponse(BaseModel):
    """Result of validating a workflow graph."""

    ok: bool
    errors: List[GraphErrorResponse] = Field(default_factory=list)


class ManualTriggerRequest(BaseModel):
    """Request to start a run of the published version for one contact."""

    subject_id: str = Field(min_length=1, description="Contact ID")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Extra trigger payload")
