"""CRM trigger events and the event source contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from core.constants import TriggerEventType
from core.exceptions import ValidationError
from core.utils import utcnow_naive

# Trigger config filter key -> payload keys it is compared against
FILTER_PAYLOAD_KEYS: dict[str, tuple[str, ...]] = {
    "to_stage_id": ("toStageId", "to_stage_id"),
    "tag_id": ("tagId", "tag_id"),
}


@dataclass
class TriggerEvent:
    """A CRM event that may start workflow runs.

    ``chain_depth`` is 0 for events from the CRM and grows by one each
    time a workflow action causes a follow-up event.
    """

    type: TriggerEventType
    organization_id: str
    subject_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    chain_depth: int = 0
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=utcnow_naive)

    @classmethod
    def from_dict(cls, data: dict) -> "TriggerEvent":
        """Build an event from its wire form (camelCase or snake_case keys).

        Raises:
            ValidationError: If the type is unknown or ids are missing
        """
        try:
            event_type = TriggerEventType(data.get("type"))
        except ValueError:
            raise ValidationError(f"Unknown event type: {data.get('type')!r}")

        organization_id = data.get("organizationId") or data.get("organization_id")
        subject_id = data.get("subjectId") or data.get("subject_id")
        if not organization_id or not subject_id:
            raise ValidationError("Event requires organizationId and subjectId")

        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValidationError("Event payload must be an object")

        kwargs: dict[str, Any] = {}
        if data.get("eventId") or data.get("event_id"):
            kwargs["event_id"] = str(data.get("eventId") or data.get("event_id"))
        return cls(
            type=event_type,
            organization_id=str(organization_id),
            subject_id=str(subject_id),
            payload=payload,
            chain_depth=int(data.get("chainDepth") or data.get("chain_depth") or 0),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "organizationId": self.organization_id,
            "subjectId": self.subject_id,
            "payload": dict(self.payload),
            "chainDepth": self.chain_depth,
            "eventId": self.event_id,
            "occurredAt": self.occurred_at.isoformat(),
        }

    def payload_value(self, filter_key: str) -> Optional[Any]:
        for key in FILTER_PAYLOAD_KEYS.get(filter_key, (filter_key,)):
            if key in self.payload:
                return self.payload[key]
        return None


def matches_filters(filters: dict[str, str], event: TriggerEvent) -> bool:
    """Exact-match every configured filter against the event payload.

    An empty ``filters`` matches every event.
    """
    for key, expected in filters.items():
        actual = event.payload_value(key)
        if actual is None or str(actual) != str(expected):
            return False
    return True


EventCallback = Callable[[TriggerEvent], Awaitable[Any]]


class BaseEventSource(ABC):
    """A feed of CRM events (message bus subscription, polling, ...).

    Sources deliver every event they receive to the callback set by the
    runtime, which routes it to the trigger matcher.
    """

    name: str = "source"

    def __init__(self):
        self._callback: Optional[EventCallback] = None

    def set_callback(self, callback: EventCallback) -> None:
        self._callback = callback

    @abstractmethod
    async def start(self) -> None:
        """Begin consuming events."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop consuming events."""
        ...
