"""Workflow endpoints: create, edit, version, validate, publish, archive and trigger manually."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.exceptions import ConflictError, NotFoundError
from core.security import TokenPayload, get_current_user
from core.utils import calculate_offset
from api.schemas.common import PaginationParams
from api.schemas.run import ManualTriggerResponse, RunResponse
from api.schemas.workflow import (
    GraphErrorResponse,
    ManualTriggerRequest,
    ValidationResponse,
    WorkflowCreate,
    WorkflowGraphUpdate,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowVersionsResponse,
)
from app.dependencies import get_automation_runtime, get_db
from services.workflow_service import WorkflowService
from workflow.runtime import AutomationRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


def _workflow_to_response(wf) -> WorkflowResponse:
    """Convert a WorkflowDefinition ORM object to response schema."""
    return WorkflowResponse(
        id=wf.id,
        workflow_id=wf.workflow_id,
        name=wf.name,
        description=wf.description or "",
        version=wf.version,
        status=wf.status,
        trigger_type=wf.trigger_type,
        graph=wf.graph or {},
        published_at=wf.published_at,
        created_by=wf.created_by_id or "",
        created_at=wf.created_at,
        updated_at=wf.updated_at,
    )


@router.get("/", response_model=WorkflowListResponse)
async def list_workflows(
    pagination: PaginationParams = Depends(),
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowListResponse:
    """
    List workflows in the current organization (latest version of each).
    """
    workflows, total = await WorkflowService(db).list_latest(
        organization_id=current_user.org_id,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return WorkflowListResponse(
        workflows=[_workflow_to_response(wf) for wf in workflows],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreate,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Create a new workflow as draft version 1.
    """
    wf = await WorkflowService(db).create_workflow(
        organization_id=current_user.org_id,
        name=request.name,
        description=request.description or "",
        graph=request.graph,
        created_by_id=current_user.sub,
    )
    return _workflow_to_response(wf)


@router.get("/{workflow_id}", response_model=WorkflowVersionsResponse)
async def get_workflow_versions(
    workflow_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowVersionsResponse:
    """
    Every version of a workflow, newest first.
    """
    versions = await WorkflowService(db).list_versions(workflow_id, current_user.org_id)
    if not versions:
        raise NotFoundError(f"Workflow {workflow_id} not found")
    return WorkflowVersionsResponse(
        workflow_id=workflow_id,
        versions=[_workflow_to_response(wf) for wf in versions],
    )


@router.put("/{workflow_id}/graph", response_model=WorkflowResponse)
async def save_workflow_graph(
    workflow_id: str,
    request: WorkflowGraphUpdate,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Save the graph. Editing a published workflow starts a new draft version.
    """
    wf = await WorkflowService(db).save_draft(
        workflow_id,
        current_user.org_id,
        graph=request.graph,
        name=request.name,
        description=request.description,
        created_by_id=current_user.sub,
    )
    return _workflow_to_response(wf)


@router.post("/{workflow_id}/validate", response_model=ValidationResponse)
async def validate_workflow(
    workflow_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    runtime: AutomationRuntime = Depends(get_automation_runtime),
) -> ValidationResponse:
    """
    Validate the latest version's graph without publishing it.
    """
    latest = await WorkflowService(db).get_latest(workflow_id, current_user.org_id)
    result = await runtime.validator.validate(latest.graph, current_user.org_id)
    return ValidationResponse(
        ok=result.ok,
        errors=[GraphErrorResponse(**error.to_dict()) for error in result.errors],
    )


@router.post("/{workflow_id}/publish", response_model=WorkflowResponse)
async def publish_workflow(
    workflow_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    runtime: AutomationRuntime = Depends(get_automation_runtime),
) -> WorkflowResponse:
    """
    Publish the latest draft. Responds 422 with every graph error when invalid.
    """
    wf = await WorkflowService(db).publish(workflow_id, current_user.org_id, runtime.validator)
    return _workflow_to_response(wf)


@router.post("/{workflow_id}/archive", response_model=WorkflowResponse)
async def archive_workflow(
    workflow_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Archive the published version. Active runs finish on it.
    """
    wf = await WorkflowService(db).archive(workflow_id, current_user.org_id)
    return _workflow_to_response(wf)


@router.post("/{workflow_id}/trigger", response_model=ManualTriggerResponse, status_code=status.HTTP_201_CREATED)
async def trigger_workflow(
    workflow_id: str,
    request: ManualTriggerRequest,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    runtime: AutomationRuntime = Depends(get_automation_runtime),
) -> ManualTriggerResponse:
    """
    Start a run of the published version for one contact, skipping trigger filters.
    """
    definition = await WorkflowService(db).get_published(workflow_id, current_user.org_id)
    if definition is None:
        raise NotFoundError(f"Workflow {workflow_id} has no published version")

    outcome = await runtime.matcher.start_manual(
        definition,
        request.subject_id,
        {**request.payload, "triggeredBy": current_user.sub},
    )
    if outcome is None:
        raise ConflictError(f"Contact {request.subject_id} already has an active run of workflow {workflow_id}")

    run = await runtime.store.get(outcome.run_id)
    logger.info(f"Manual run {outcome.run_id} of workflow {workflow_id} by {current_user.sub}")
    return ManualTriggerResponse(started=True, run=RunResponse.model_validate(run))
