"""CRM event intake."""

from fastapi import APIRouter, Depends, status
import logging

from core.security import TokenPayload, get_current_user
from api.schemas.event import EventRequest, EventResponse
from app.dependencies import get_automation_runtime
from triggers.base import TriggerEvent
from workflow.runtime import AutomationRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


@router.post("/", response_model=EventResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    request: EventRequest,
    current_user: TokenPayload = Depends(get_current_user),
    runtime: AutomationRuntime = Depends(get_automation_runtime),
) -> EventResponse:
    """
    Match an event against published workflows and start the matching runs.

    Runs advance until their first delay or until they finish before the
    response is sent.
    """
    kwargs = {"event_id": request.event_id} if request.event_id else {}
    event = TriggerEvent(
        type=request.type,
        organization_id=current_user.org_id,
        subject_id=request.subject_id,
        payload=request.payload,
        **kwargs,
    )
    result = await runtime.handle_event(event)
    return EventResponse(
        event_id=result.event_id,
        matched=result.matched,
        started_run_ids=[run.id for run in result.runs],
        deduplicated=result.deduplicated,
        ignored_reason=result.ignored_reason,
    )
