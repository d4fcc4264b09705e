"""
Collaborator interfaces used by the automation engine.

The engine never owns CRM data. Contacts, stages and tags belong to the
Pipeline service, email templates to the Messaging service, webhook
endpoints to the Webhook dispatcher. These abstract classes are the only
surface the engine talks to; ``integrations.http_clients`` provides the
HTTP implementations used in production.

Implementations raise ``CollaboratorError`` with ``retryable`` set for
failures worth retrying (timeouts, 5xx, 429) and unset for everything
else.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


_MISSING = object()


@dataclass
class Subject:
    """A CRM contact as seen by the engine.

    ``fields`` holds the contact's top-level attributes (email,
    full_name, company, value_cents, ...); ``custom_fields`` the
    tenant-defined ones.
    """

    id: str
    organization_id: str
    stage_id: Optional[str] = None
    tags: frozenset[str] = field(default_factory=frozenset)
    fields: dict[str, Any] = field(default_factory=dict)
    custom_fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Subject":
        fields = dict(data.get("fields") or {})
        # Flat payloads carry attributes at the top level
        for key, value in data.items():
            if key not in ("id", "organization_id", "organizationId", "stage_id", "stageId",
                           "tags", "tag_ids", "fields", "custom_fields", "customFields"):
                fields.setdefault(key, value)
        tags = data.get("tags") or data.get("tag_ids") or []
        return cls(
            id=str(data["id"]),
            organization_id=str(data.get("organization_id") or data.get("organizationId") or ""),
            stage_id=data.get("stage_id") or data.get("stageId"),
            tags=frozenset(str(t) for t in tags),
            fields=fields,
            custom_fields=dict(data.get("custom_fields") or data.get("customFields") or {}),
        )

    def lookup(self, path: str) -> Any:
        """Resolve a field path against the subject.

        Top-level attributes win over custom fields. Dotted paths walk
        nested dicts (``custom_fields.team_size``, ``address.city``).

        Returns:
            The value, or ``_MISSING`` when the path does not resolve
        """
        attributes = {
            "id": self.id,
            "stage_id": self.stage_id,
            "tags": sorted(self.tags),
            **self.fields,
            "custom_fields": self.custom_fields,
        }
        for source in (attributes, self.custom_fields):
            value = _walk(source, path)
            if value is not _MISSING and value is not None:
                return value
        return _MISSING

    def merge_fields(self) -> dict[str, Any]:
        """Flat mapping used for template rendering."""
        merged = {**self.custom_fields, **self.fields}
        merged["id"] = self.id
        merged["stage_id"] = self.stage_id
        return merged

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "stage_id": self.stage_id,
            "tags": sorted(self.tags),
            "fields": dict(self.fields),
            "custom_fields": dict(self.custom_fields),
        }


def _walk(source: dict, path: str) -> Any:
    current: Any = source
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


# ─── Interfaces ─────────────────────────────────────────────────────────────


class PipelineService(ABC):
    """Read and mutate contacts in the CRM pipeline."""

    @abstractmethod
    async def get_subject(self, organization_id: str, subject_id: str) -> Optional[Subject]:
        """Fetch the current state of a contact, or None if it does not exist."""

    @abstractmethod
    async def set_stage(self, organization_id: str, subject_id: str, stage_id: str) -> None:
        ...

    @abstractmethod
    async def add_tag(self, organization_id: str, subject_id: str, tag_id: str) -> None:
        ...

    @abstractmethod
    async def remove_tag(self, organization_id: str, subject_id: str, tag_id: str) -> None:
        ...

    @abstractmethod
    async def stage_exists(self, organization_id: str, stage_id: str) -> bool:
        ...

    @abstractmethod
    async def tag_exists(self, organization_id: str, tag_id: str) -> bool:
        ...


class MessagingService(ABC):
    """Template-based email sending."""

    @abstractmethod
    async def template_exists(self, organization_id: str, template_id: str) -> bool:
        ...

    @abstractmethod
    async def send_template(
        self,
        organization_id: str,
        template_id: str,
        to_email: str,
        merge_fields: dict[str, Any],
        from_name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[str]:
        """Render and send a template.

        Returns:
            Provider message id, when the service returns one
        """


class WebhookDispatcher(ABC):
    """Delivers workflow webhooks to tenant-registered endpoints."""

    @abstractmethod
    async def endpoint_exists(self, organization_id: str, endpoint_id: str) -> bool:
        ...

    @abstractmethod
    async def deliver(
        self,
        organization_id: str,
        endpoint_id: str,
        payload: dict[str, Any],
        delivery_id: str,
        timeout: float,
    ) -> int:
        """POST ``payload`` to the endpoint.

        Returns:
            HTTP status code of the endpoint's response
        """
