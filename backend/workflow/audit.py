"""
Run history and audit trail.

Every node execution attempt becomes an immutable NodeExecutionRecord.
The trail serves two purposes:

- Operators inspect a run's history (which branch a condition took,
  which attempt of a webhook finally succeeded, why a run failed).
- The action dispatcher checks it before re-sending an email or a
  webhook, so a run resumed after a crash never repeats a delivered
  side effect.

Records are written in their own short transaction, separate from run
state updates, so an outcome is durable before the run moves on.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import NodeOutcome
from core.utils import utcnow_naive
from db.models.node_execution import NodeExecutionRecord
from db.models.run import RunInstance

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """Read-side view of a NodeExecutionRecord."""

    run_id: str
    node_id: str
    node_type: str
    attempt: int
    outcome: str
    error: Optional[str]
    output: Optional[dict]
    executed_at: datetime

    @classmethod
    def from_record(cls, record: NodeExecutionRecord) -> "AuditEntry":
        return cls(
            run_id=record.run_id,
            node_id=record.node_id,
            node_type=record.node_type,
            attempt=record.attempt,
            outcome=record.outcome,
            error=record.error,
            output=record.output,
            executed_at=record.executed_at,
        )


class RunAuditLog:
    """Append-only log of node execution attempts."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        run_id: str,
        node_id: str,
        node_type: str,
        attempt: int,
        outcome: NodeOutcome,
        error: Optional[str] = None,
        output: Optional[dict] = None,
    ) -> AuditEntry:
        """Append one attempt's outcome.

        Args:
            run_id: Run the node belongs to
            node_id: Node that was executed
            node_type: Node type, kept for readable history
            attempt: Attempt number (1-based)
            outcome: success, failed or skipped
            error: Failure reason
            output: Small JSON-serialisable result (branch taken, message id, ...)

        Returns:
            The stored entry
        """
        record = NodeExecutionRecord(
            run_id=run_id,
            node_id=node_id,
            node_type=node_type,
            attempt=attempt,
            outcome=outcome.value,
            error=error,
            output=output,
            executed_at=utcnow_naive(),
        )
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()

        log = logger.warning if outcome == NodeOutcome.FAILED else logger.info
        log(
            "node_executed",
            run_id=run_id,
            node_id=node_id,
            node_type=node_type,
            attempt=attempt,
            outcome=outcome.value,
            error=error,
        )
        return AuditEntry.from_record(record)

    async def has_success(self, run_id: str, node_id: str) -> bool:
        """True when any attempt of ``node_id`` in ``run_id`` succeeded."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(NodeExecutionRecord.id)
                .where(
                    NodeExecutionRecord.run_id == run_id,
                    NodeExecutionRecord.node_id == node_id,
                    NodeExecutionRecord.outcome == NodeOutcome.SUCCESS.value,
                )
                .limit(1)
            )
            return result.first() is not None

    async def next_attempt(self, run_id: str, node_id: str) -> int:
        """Next unused attempt number for ``node_id`` in ``run_id``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.max(NodeExecutionRecord.attempt)).where(
                    NodeExecutionRecord.run_id == run_id,
                    NodeExecutionRecord.node_id == node_id,
                )
            )
            return (result.scalar() or 0) + 1

    async def history(self, run_id: str) -> list[AuditEntry]:
        """Every record of a run, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(NodeExecutionRecord)
                .where(NodeExecutionRecord.run_id == run_id)
                .order_by(NodeExecutionRecord.executed_at, NodeExecutionRecord.attempt)
            )
            return [AuditEntry.from_record(r) for r in result.scalars().all()]

    async def history_for_subject(
        self,
        organization_id: str,
        subject_id: str,
        limit: int = 500,
    ) -> list[AuditEntry]:
        """Records across every run of a subject, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(NodeExecutionRecord)
                .join(RunInstance, RunInstance.id == NodeExecutionRecord.run_id)
                .where(
                    RunInstance.organization_id == organization_id,
                    RunInstance.subject_id == subject_id,
                )
                .order_by(NodeExecutionRecord.executed_at.desc())
                .limit(limit)
            )
            return [AuditEntry.from_record(r) for r in result.scalars().all()]
