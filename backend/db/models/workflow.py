"""Workflow definition model for the CRM automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WorkflowStatus
from db.base import BaseModel


class WorkflowDefinition(BaseModel):
    """One version of a workflow graph.

    Every version of a workflow is its own row; ``workflow_id`` groups
    them. Runs point at the row (``id``) they started on, so an edit or a
    re-publish never changes the graph an active run is executing.

    Attributes:
        id: Unique identifier of this version (UUID string)
        workflow_id: Logical workflow identifier shared by all versions
        organization_id: Owning tenant
        name: Workflow name
        description: Free-form description
        status: draft, published or archived
        version: Monotonic version number within the workflow
        graph: Graph JSON as produced by the builder
        trigger_type: Event type of the trigger node, set on publish
        published_at: When this version was published
        created_by_id: User who saved this version
    """

    __tablename__ = "workflow_definitions"

    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    status: Mapped[str] = mapped_column(
        default=WorkflowStatus.DRAFT.value, index=True
    )
    version: Mapped[int] = mapped_column(default=1)
    graph: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    trigger_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by_id: Mapped[Optional[str]] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("workflow_id", "version", name="uq_workflow_definitions_version"),
        Index(
            "ix_workflow_definitions_matching",
            "organization_id",
            "status",
            "trigger_type",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowDefinition {self.workflow_id} v{self.version} "
            f"status={self.status}>"
        )
