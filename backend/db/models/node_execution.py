"""Node execution record model.

Append-only audit log: one row per attempt at executing a node within a
run. Rows are never updated. The dispatcher reads them back to avoid
sending the same email or webhook twice.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class NodeExecutionRecord(BaseModel):
    """One attempt at one node of one run."""

    __tablename__ = "node_execution_records"

    run_id: Mapped[str] = mapped_column(
        ForeignKey("run_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    node_id: Mapped[str] = mapped_column(nullable=False)
    node_type: Mapped[str] = mapped_column(nullable=False)
    attempt: Mapped[int] = mapped_column(nullable=False, default=1)
    outcome: Mapped[str] = mapped_column(nullable=False, index=True)
    error: Mapped[Optional[str]] = mapped_column(nullable=True)
    output: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("run_id", "node_id", "attempt", name="uq_node_execution_attempt"),
        Index("ix_node_execution_records_run", "run_id", "executed_at"),
    )
