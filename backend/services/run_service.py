"""Run service: read-side queries over workflow runs for the operator API."""

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFoundError
from db.models.node_execution import NodeExecutionRecord
from db.models.run import RunInstance
from services.base import BaseService


class RunService(BaseService[RunInstance]):
    """Queries over runs and their node execution records."""

    def __init__(self, db: AsyncSession):
        super().__init__(RunInstance, db)

    async def get_for_org(self, run_id: str, organization_id: str) -> RunInstance:
        """
        Raises:
            NotFoundError: If the run does not exist in the organization
        """
        run = await self.get_by_id_and_org(run_id, organization_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def list_runs(
        self,
        organization_id: str,
        subject_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        state: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[RunInstance], int]:
        return await self.list(
            organization_id=organization_id,
            offset=offset,
            limit=limit,
            order_by="started_at",
            filters={"subject_id": subject_id, "workflow_id": workflow_id, "state": state},
        )

    async def node_records(self, run_id: str) -> Sequence[NodeExecutionRecord]:
        result = await self.db.execute(
            select(NodeExecutionRecord)
            .where(NodeExecutionRecord.run_id == run_id)
            .order_by(NodeExecutionRecord.executed_at, NodeExecutionRecord.attempt)
        )
        return result.scalars().all()
