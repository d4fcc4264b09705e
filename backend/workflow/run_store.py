"""
Run persistence for the engine.

All run state changes go through conditional UPDATE statements so that
concurrent actors (executor, scheduler, operator cancel) never overwrite
each other:

- progress writes only apply while the run is ``running``
- claims (``suspended -> running``, stale ``running`` recovery) compare
  and bump ``lock_version``, so exactly one worker wins
- terminal transitions clear ``active_key``, releasing the
  one-active-run-per-subject slot

Each method opens its own short transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ACTIVE_RUN_STATES, RunState
from core.utils import utcnow_naive
from db.models.run import RunInstance, active_key_for
from db.models.workflow import WorkflowDefinition

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ClaimCandidate:
    run_id: str
    lock_version: int


class RunStore:
    """Creates runs and applies guarded state transitions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ─── Create / read ──────────────────────────────────────────────────

    async def create(
        self,
        definition: WorkflowDefinition,
        subject_id: str,
        start_node_id: str,
        trigger_event: dict[str, Any],
        chain_depth: int = 0,
    ) -> Optional[RunInstance]:
        """Create a running run positioned at ``start_node_id``.

        Returns:
            The new run, or None when the subject already has an active
            run of this definition version.
        """
        now = utcnow_naive()
        run = RunInstance(
            organization_id=definition.organization_id,
            workflow_id=definition.workflow_id,
            definition_id=definition.id,
            workflow_version=definition.version,
            subject_id=subject_id,
            current_node_id=start_node_id,
            state=RunState.RUNNING.value,
            started_at=now,
            trigger_event=trigger_event,
            chain_depth=chain_depth,
            lock_version=0,
            active_key=active_key_for(definition.id, subject_id),
        )
        async with self._session_factory() as session:
            session.add(run)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "run_deduplicated",
                    definition_id=definition.id,
                    workflow_id=definition.workflow_id,
                    subject_id=subject_id,
                )
                return None

        logger.info(
            "run_created",
            run_id=run.id,
            workflow_id=definition.workflow_id,
            version=definition.version,
            subject_id=subject_id,
            chain_depth=chain_depth,
        )
        return run

    async def get(self, run_id: str) -> Optional[RunInstance]:
        async with self._session_factory() as session:
            result = await session.execute(select(RunInstance).where(RunInstance.id == run_id))
            return result.scalar_one_or_none()

    async def get_state(self, run_id: str) -> Optional[RunState]:
        async with self._session_factory() as session:
            result = await session.execute(select(RunInstance.state).where(RunInstance.id == run_id))
            state = result.scalar_one_or_none()
            return RunState(state) if state else None

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkflowDefinition).where(WorkflowDefinition.id == definition_id)
            )
            return result.scalar_one_or_none()

    # ─── Guarded transitions ────────────────────────────────────────────

    async def _transition(
        self,
        run_id: str,
        from_states: Iterable[RunState],
        values: dict[str, Any],
        lock_version: Optional[int] = None,
    ) -> bool:
        stmt = (
            update(RunInstance)
            .where(
                RunInstance.id == run_id,
                RunInstance.state.in_([s.value for s in from_states]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if lock_version is not None:
            stmt = stmt.where(RunInstance.lock_version == lock_version)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def move_to(self, run_id: str, node_id: str) -> bool:
        """Record that the run is now positioned at ``node_id``."""
        return await self._transition(run_id, [RunState.RUNNING], {"current_node_id": node_id})

    async def suspend(self, run_id: str, node_id: str, resume_at: datetime) -> bool:
        return await self._transition(
            run_id,
            [RunState.RUNNING],
            {
                "current_node_id": node_id,
                "state": RunState.SUSPENDED.value,
                "resume_at": resume_at,
            },
        )

    async def complete(self, run_id: str) -> bool:
        return await self._transition(
            run_id,
            [RunState.RUNNING],
            {
                "state": RunState.COMPLETED.value,
                "completed_at": utcnow_naive(),
                "resume_at": None,
                "active_key": None,
            },
        )

    async def fail(self, run_id: str, error: str) -> bool:
        return await self._transition(
            run_id,
            [RunState.RUNNING],
            {
                "state": RunState.FAILED.value,
                "error_message": error[:2000],
                "completed_at": utcnow_naive(),
                "resume_at": None,
                "active_key": None,
            },
        )

    async def cancel(self, run_id: str) -> bool:
        """Cancel an active run. Returns False if it was already terminal."""
        cancelled = await self._transition(
            run_id,
            ACTIVE_RUN_STATES,
            {
                "state": RunState.CANCELLED.value,
                "completed_at": utcnow_naive(),
                "resume_at": None,
                "active_key": None,
            },
        )
        if cancelled:
            logger.info("run_cancelled", run_id=run_id)
        return cancelled

    # ─── Scheduler support ──────────────────────────────────────────────

    async def due_runs(self, now: datetime, limit: int) -> list[ClaimCandidate]:
        """Suspended runs whose ``resume_at`` has passed, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RunInstance.id, RunInstance.lock_version)
                .where(
                    RunInstance.state == RunState.SUSPENDED.value,
                    RunInstance.resume_at <= now,
                )
                .order_by(RunInstance.resume_at)
                .limit(limit)
            )
            return [ClaimCandidate(run_id=row[0], lock_version=row[1]) for row in result.all()]

    async def stale_running(self, older_than: datetime, limit: int) -> list[ClaimCandidate]:
        """Running runs nobody has touched since ``older_than``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RunInstance.id, RunInstance.lock_version)
                .where(
                    RunInstance.state == RunState.RUNNING.value,
                    RunInstance.updated_at < older_than,
                )
                .order_by(RunInstance.updated_at)
                .limit(limit)
            )
            return [ClaimCandidate(run_id=row[0], lock_version=row[1]) for row in result.all()]

    async def claim_suspended(self, candidate: ClaimCandidate) -> bool:
        """Atomically move a due run from suspended to running."""
        return await self._transition(
            candidate.run_id,
            [RunState.SUSPENDED],
            {
                "state": RunState.RUNNING.value,
                "resume_at": None,
                "lock_version": candidate.lock_version + 1,
            },
            lock_version=candidate.lock_version,
        )

    async def release(self, candidate: ClaimCandidate, resume_at: datetime) -> bool:
        """Hand a claimed run back to the scheduler, due again at ``resume_at``.

        Only applies while the run is still running under the claim made
        from ``candidate``; a run that moved on or was taken over is left alone.
        """
        claimed_version = candidate.lock_version + 1
        return await self._transition(
            candidate.run_id,
            [RunState.RUNNING],
            {
                "state": RunState.SUSPENDED.value,
                "resume_at": resume_at,
                "lock_version": claimed_version + 1,
            },
            lock_version=claimed_version,
        )

    async def claim_stale(self, candidate: ClaimCandidate) -> bool:
        """Take over an orphaned running run."""
        return await self._transition(
            candidate.run_id,
            [RunState.RUNNING],
            {"lock_version": candidate.lock_version + 1},
            lock_version=candidate.lock_version,
        )
