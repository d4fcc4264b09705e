"""Base service for organization-scoped models.

Workflow definitions and runs both belong to one organization. Every
query built here is filtered by ``organization_id`` so one tenant can
never read or change another tenant's rows.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Shared queries and writes for one model.

    Usage:
        class RunService(BaseService[RunInstance]):
            def __init__(self, db: AsyncSession):
                super().__init__(RunInstance, db)

    Writes flush but never commit; the request (or worker task) that
    owns the session decides when to commit.
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    def _scoped(self, query: Select, organization_id: str) -> Select:
        return query.where(self.model.organization_id == organization_id)

    def _filtered(self, query: Select, filters: Optional[dict[str, Any]]) -> Select:
        """Equality filters; None values are ignored, lists become IN."""
        for name, value in (filters or {}).items():
            if value is None:
                continue
            column = getattr(self.model, name)
            query = query.where(column.in_(value) if isinstance(value, (list, tuple, set)) else column == value)
        return query

    async def get_by_id_and_org(self, id: str, organization_id: str) -> Optional[ModelType]:
        result = await self.db.execute(
            self._scoped(select(self.model), organization_id).where(self.model.id == id)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        organization_id: str,
        offset: int = 0,
        limit: int = 50,
        order_by: str = "created_at",
        order_desc: bool = True,
        filters: Optional[dict[str, Any]] = None,
    ) -> tuple[Sequence[ModelType], int]:
        """One page of an organization's rows.

        Returns:
            Tuple of (items, total matching rows)
        """
        query = self._filtered(self._scoped(select(self.model), organization_id), filters)
        total = (
            await self.db.execute(select(func.count()).select_from(query.subquery()))
        ).scalar() or 0

        column = getattr(self.model, order_by)
        page = query.order_by(column.desc() if order_desc else column.asc()).offset(offset).limit(limit)
        result = await self.db.execute(page)
        return result.scalars().all(), total

    async def create(self, data: dict[str, Any]) -> ModelType:
        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    async def update(self, instance: ModelType, data: dict[str, Any]) -> ModelType:
        """Set the non-None values of ``data`` on ``instance``."""
        for key, value in data.items():
            if value is not None:
                setattr(instance, key, value)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance
