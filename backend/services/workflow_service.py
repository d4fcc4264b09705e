"""Workflow service: definition versions and their lifecycle."""

import logging
from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import WorkflowStatus
from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.utils import utcnow_naive
from db.models.workflow import WorkflowDefinition
from services.base import BaseService

logger = logging.getLogger(__name__)

EMPTY_GRAPH = {"nodes": [], "edges": []}


class WorkflowService(BaseService[WorkflowDefinition]):
    """Service for workflow definitions.

    A workflow is the set of definition rows sharing a ``workflow_id``.
    Only the latest row may be a draft, and at most one row is published.
    """

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowDefinition, db)

    # ─── Queries ───────────────────────────────────────────

    async def list_versions(self, workflow_id: str, organization_id: str) -> Sequence[WorkflowDefinition]:
        """Every version of a workflow, newest first."""
        result = await self.db.execute(
            select(WorkflowDefinition)
            .where(
                WorkflowDefinition.workflow_id == workflow_id,
                WorkflowDefinition.organization_id == organization_id,
            )
            .order_by(WorkflowDefinition.version.desc())
        )
        return result.scalars().all()

    async def get_latest(self, workflow_id: str, organization_id: str) -> WorkflowDefinition:
        """Newest version of a workflow.

        Raises:
            NotFoundError: If the workflow does not exist in the organization
        """
        versions = await self.list_versions(workflow_id, organization_id)
        if not versions:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return versions[0]

    async def get_published(self, workflow_id: str, organization_id: str) -> Optional[WorkflowDefinition]:
        result = await self.db.execute(
            select(WorkflowDefinition).where(
                WorkflowDefinition.workflow_id == workflow_id,
                WorkflowDefinition.organization_id == organization_id,
                WorkflowDefinition.status == WorkflowStatus.PUBLISHED.value,
            )
        )
        return result.scalars().first()

    async def list_published_for_trigger(
        self,
        organization_id: str,
        trigger_type: str,
    ) -> Sequence[WorkflowDefinition]:
        """Published definitions listening for ``trigger_type``."""
        result = await self.db.execute(
            select(WorkflowDefinition)
            .where(
                WorkflowDefinition.organization_id == organization_id,
                WorkflowDefinition.status == WorkflowStatus.PUBLISHED.value,
                WorkflowDefinition.trigger_type == trigger_type,
            )
            .order_by(WorkflowDefinition.published_at)
        )
        return result.scalars().all()

    async def list_latest(
        self,
        organization_id: str,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[WorkflowDefinition], int]:
        """Latest version of every workflow in the organization."""
        latest = (
            select(
                WorkflowDefinition.workflow_id,
                func.max(WorkflowDefinition.version).label("version"),
            )
            .where(WorkflowDefinition.organization_id == organization_id)
            .group_by(WorkflowDefinition.workflow_id)
            .subquery()
        )
        query = (
            select(WorkflowDefinition)
            .join(
                latest,
                (WorkflowDefinition.workflow_id == latest.c.workflow_id)
                & (WorkflowDefinition.version == latest.c.version),
            )
            .order_by(WorkflowDefinition.updated_at.desc())
        )
        total = (await self.db.execute(select(func.count()).select_from(latest))).scalar() or 0
        result = await self.db.execute(query.offset(offset).limit(limit))
        return result.scalars().all(), total

    # ─── Commands ──────────────────────────────────────────

    async def create_workflow(
        self,
        organization_id: str,
        name: str,
        description: str = "",
        graph: dict = None,
        created_by_id: str = None,
    ) -> WorkflowDefinition:
        """Create a new workflow as draft version 1."""
        definition = await self.create({
            "workflow_id": str(uuid4()),
            "organization_id": organization_id,
            "name": name,
            "description": description,
            "graph": graph or dict(EMPTY_GRAPH),
            "created_by_id": created_by_id,
            "status": WorkflowStatus.DRAFT.value,
            "version": 1,
        })
        logger.info(f"Workflow {definition.workflow_id} created in org {organization_id}")
        return definition

    async def save_draft(
        self,
        workflow_id: str,
        organization_id: str,
        graph: Optional[dict] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        created_by_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Save edits to a workflow.

        A draft is updated in place. Published and archived versions are
        never mutated: editing them creates the next version as a draft.
        """
        latest = await self.get_latest(workflow_id, organization_id)

        if latest.status == WorkflowStatus.DRAFT.value:
            return await self.update(latest, {"graph": graph, "name": name, "description": description})

        draft = await self.create({
            "workflow_id": workflow_id,
            "organization_id": organization_id,
            "name": name or latest.name,
            "description": description if description is not None else latest.description,
            "graph": graph if graph is not None else dict(latest.graph or EMPTY_GRAPH),
            "created_by_id": created_by_id,
            "status": WorkflowStatus.DRAFT.value,
            "version": latest.version + 1,
        })
        logger.info(f"Workflow {workflow_id} v{draft.version} drafted from v{latest.version}")
        return draft

    async def publish(self, workflow_id: str, organization_id: str, validator) -> WorkflowDefinition:
        """Validate the latest draft and publish it.

        Args:
            workflow_id: Workflow to publish
            organization_id: Tenant scope
            validator: GraphValidator used for the structural and reference checks

        Raises:
            NotFoundError: If the workflow does not exist
            ConflictError: If the latest version is not a draft
            ValidationError: If the graph is invalid; ``errors`` lists every problem
        """
        draft = await self.get_latest(workflow_id, organization_id)
        if draft.status != WorkflowStatus.DRAFT.value:
            raise ConflictError(f"Workflow {workflow_id} has no draft to publish")

        result = await validator.validate(draft.graph, organization_id)
        if not result.ok:
            logger.info(f"Workflow {workflow_id} v{draft.version} rejected with {len(result.errors)} error(s)")
            raise ValidationError(
                f"Workflow {workflow_id} v{draft.version} is not valid",
                errors=[error.to_dict() for error in result.errors],
            )
        return await self.mark_published(draft, result.graph.trigger.config.trigger_type)

    async def mark_published(self, draft: WorkflowDefinition, trigger_type: str) -> WorkflowDefinition:
        """Publish ``draft`` and archive the previously published version.

        The caller must have validated the draft's graph.

        Raises:
            ConflictError: If ``draft`` is not a draft
        """
        if draft.status != WorkflowStatus.DRAFT.value:
            raise ConflictError(f"Version {draft.version} is {draft.status}, only drafts can be published")

        previous = await self.get_published(draft.workflow_id, draft.organization_id)
        if previous is not None:
            await self.update(previous, {"status": WorkflowStatus.ARCHIVED.value})

        published = await self.update(draft, {
            "status": WorkflowStatus.PUBLISHED.value,
            "trigger_type": trigger_type,
            "published_at": utcnow_naive(),
        })
        logger.info(
            f"Workflow {draft.workflow_id} v{draft.version} published"
            + (f", v{previous.version} archived" if previous is not None else "")
        )
        return published

    async def archive(self, workflow_id: str, organization_id: str) -> WorkflowDefinition:
        """Stop new runs of a workflow. Active runs finish on their version.

        Raises:
            NotFoundError: If the workflow has no published version
        """
        published = await self.get_published(workflow_id, organization_id)
        if published is None:
            raise NotFoundError(f"Workflow {workflow_id} has no published version")
        archived = await self.update(published, {"status": WorkflowStatus.ARCHIVED.value})
        logger.info(f"Workflow {workflow_id} v{published.version} archived")
        return archived
