"""CRM event intake schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from core.constants import TriggerEventType


class EventRequest(BaseModel):
    """A CRM event for the caller's organization."""

    type: TriggerEventType = Field(description="Event type")
    subject_id: str = Field(min_length=1, description="Contact the event is about")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload, e.g. toStageId or tagId")
    event_id: Optional[str] = Field(default=None, description="Caller-supplied event ID")


class EventResponse(BaseModel):
    """How the event was routed."""

    event_id: str
    matched: int = Field(description="Published workflows whose trigger matched")
    started_run_ids: List[str] = Field(default_factory=list)
    deduplicated: int = Field(description="Matches dropped because a run was already active")
    ignored_reason: Optional[str] = None
