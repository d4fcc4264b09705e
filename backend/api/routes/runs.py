"""Run endpoints: history per contact, run detail with node records, node history per contact, cancel."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.constants import RunState
from core.exceptions import ConflictError
from core.security import TokenPayload, get_current_user
from core.utils import calculate_offset
from api.schemas.common import PaginationParams
from api.schemas.run import (
    NodeExecutionResponse,
    RunDetailResponse,
    RunListResponse,
    RunResponse,
    SubjectHistoryResponse,
    SubjectNodeExecutionResponse,
)
from app.dependencies import get_automation_runtime, get_db
from services.run_service import RunService
from workflow.runtime import AutomationRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])


@router.get("/", response_model=RunListResponse)
async def list_runs(
    subject_id: Optional[str] = Query(default=None, description="Only runs for this contact"),
    workflow_id: Optional[str] = Query(default=None, description="Only runs of this workflow"),
    state: Optional[RunState] = Query(default=None, description="Only runs in this state"),
    pagination: PaginationParams = Depends(),
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> RunListResponse:
    """
    Run history for the organization, newest first.
    """
    runs, total = await RunService(db).list_runs(
        current_user.org_id,
        subject_id=subject_id,
        workflow_id=workflow_id,
        state=state.value if state else None,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return RunListResponse(
        runs=[RunResponse.model_validate(run) for run in runs],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/history", response_model=SubjectHistoryResponse)
async def subject_history(
    subject_id: str = Query(description="Contact whose node executions to list"),
    limit: int = Query(default=100, ge=1, le=500),
    current_user: TokenPayload = Depends(get_current_user),
    runtime: AutomationRuntime = Depends(get_automation_runtime),
) -> SubjectHistoryResponse:
    """
    Node execution attempts across every run of a contact, newest first.
    """
    entries = await runtime.audit.history_for_subject(current_user.org_id, subject_id, limit=limit)
    return SubjectHistoryResponse(
        subject_id=subject_id,
        entries=[SubjectNodeExecutionResponse.model_validate(entry) for entry in entries],
    )


@router.get("/{run_id}", response_model=RunDetailResponse)
async def get_run(
    run_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> RunDetailResponse:
    """
    A run with every node execution attempt.
    """
    svc = RunService(db)
    run = await svc.get_for_org(run_id, current_user.org_id)
    records = await svc.node_records(run.id)

    detail = RunDetailResponse.model_validate(run)
    detail.history = [NodeExecutionResponse.model_validate(record) for record in records]
    return detail


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(
    run_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    runtime: AutomationRuntime = Depends(get_automation_runtime),
) -> RunResponse:
    """
    Cancel an active run. A node already in flight finishes; nothing after it runs.
    """
    svc = RunService(db)
    run = await svc.get_for_org(run_id, current_user.org_id)
    if not await runtime.cancel_run(run.id):
        raise ConflictError(f"Run {run_id} is already {run.state}")

    await db.refresh(run)
    logger.info(f"Run {run_id} cancelled by {current_user.sub}")
    return RunResponse.model_validate(run)
