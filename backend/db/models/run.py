"""Run instance model for the CRM automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import RunState
from db.base import BaseModel


def active_key_for(definition_id: str, subject_id: str) -> str:
    """Key that is unique among active runs of one definition version."""
    return f"{definition_id}:{subject_id}"


class RunInstance(BaseModel):
    """One execution of a workflow definition version for one subject.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning tenant
        workflow_id: Logical workflow identifier
        definition_id: Definition version the run executes
        workflow_version: Version number of that definition
        subject_id: CRM contact the run acts on
        current_node_id: Node the run is positioned at
        state: running, suspended, completed, failed or cancelled
        resume_at: Wake-up time while suspended on a delay node
        started_at: Creation timestamp of the run
        completed_at: When the run reached a terminal state
        error_message: Failure reason for failed runs
        trigger_event: Event that started the run
        chain_depth: Number of cascaded events that led to this run
        lock_version: Optimistic lock counter, bumped on every claim
        active_key: "<definition_id>:<subject_id>" while active, NULL once
            terminal. The unique index on it is what guarantees a single
            active run per definition version and subject.
    """

    __tablename__ = "run_instances"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    definition_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_version: Mapped[int] = mapped_column(nullable=False)
    subject_id: Mapped[str] = mapped_column(nullable=False, index=True)
    current_node_id: Mapped[str] = mapped_column(nullable=False)
    state: Mapped[str] = mapped_column(default=RunState.RUNNING.value, index=True)
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    trigger_event: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    chain_depth: Mapped[int] = mapped_column(default=0)
    lock_version: Mapped[int] = mapped_column(default=0)
    active_key: Mapped[Optional[str]] = mapped_column(nullable=True, unique=True)

    __table_args__ = (
        Index("ix_run_instances_due", "state", "resume_at"),
        Index("ix_run_instances_subject", "organization_id", "subject_id"),
    )

    @property
    def run_state(self) -> RunState:
        return RunState(self.state)

    def __repr__(self) -> str:
        return f"<RunInstance {self.id} state={self.state} node={self.current_node_id}>"
