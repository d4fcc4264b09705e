"""
HTTP implementations of the collaborator interfaces.

Each client keeps one pooled ``httpx.AsyncClient`` and maps transport
failures onto ``CollaboratorError``:

- timeouts, connection errors, 429 and 5xx  -> retryable
- any other 4xx                             -> fatal
"""

import json
from typing import Any, Optional

import httpx
import structlog

from app.config import get_settings
from core.exceptions import CollaboratorError
from core.webhook_signing import sign_webhook_payload
from integrations.base import MessagingService, PipelineService, Subject, WebhookDispatcher

logger = structlog.get_logger(__name__)


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class _ServiceClient:
    """Shared plumbing for the JSON service clients."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        allow_404: bool = False,
        **kwargs: Any,
    ) -> Optional[httpx.Response]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"{self.service_name} timed out: {e}", retryable=True, status_code=504)
        except httpx.TransportError as e:
            raise CollaboratorError(f"{self.service_name} unreachable: {e}", retryable=True, status_code=503)

        if allow_404 and response.status_code == 404:
            return None
        if response.is_error:
            logger.warning(
                "collaborator_error",
                service=self.service_name,
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise CollaboratorError(
                f"{self.service_name} returned {response.status_code} for {method} {path}",
                retryable=_is_retryable_status(response.status_code),
                status_code=response.status_code,
            )
        return response

    def _json_object(self, response: httpx.Response) -> dict:
        """Decode a JSON object body; anything else is a fatal collaborator error."""
        try:
            data = response.json()
        except ValueError as e:
            raise CollaboratorError(f"{self.service_name} returned a non-JSON body: {e}")
        if not isinstance(data, dict):
            raise CollaboratorError(f"{self.service_name} returned {type(data).__name__}, expected an object")
        return data


class HttpPipelineService(_ServiceClient, PipelineService):
    """Pipeline service over its REST API."""

    service_name = "pipeline"

    async def get_subject(self, organization_id: str, subject_id: str) -> Optional[Subject]:
        response = await self._request(
            "GET", f"/organizations/{organization_id}/contacts/{subject_id}", allow_404=True
        )
        if response is None:
            return None
        data = self._json_object(response)
        data.setdefault("id", subject_id)
        data.setdefault("organization_id", organization_id)
        return Subject.from_dict(data)

    async def set_stage(self, organization_id: str, subject_id: str, stage_id: str) -> None:
        await self._request(
            "PUT",
            f"/organizations/{organization_id}/contacts/{subject_id}/stage",
            json={"stage_id": stage_id},
        )

    async def add_tag(self, organization_id: str, subject_id: str, tag_id: str) -> None:
        await self._request(
            "PUT", f"/organizations/{organization_id}/contacts/{subject_id}/tags/{tag_id}"
        )

    async def remove_tag(self, organization_id: str, subject_id: str, tag_id: str) -> None:
        await self._request(
            "DELETE",
            f"/organizations/{organization_id}/contacts/{subject_id}/tags/{tag_id}",
            allow_404=True,
        )

    async def stage_exists(self, organization_id: str, stage_id: str) -> bool:
        response = await self._request(
            "GET", f"/organizations/{organization_id}/stages/{stage_id}", allow_404=True
        )
        return response is not None

    async def tag_exists(self, organization_id: str, tag_id: str) -> bool:
        response = await self._request(
            "GET", f"/organizations/{organization_id}/tags/{tag_id}", allow_404=True
        )
        return response is not None


class HttpMessagingService(_ServiceClient, MessagingService):
    """Messaging service over its REST API."""

    service_name = "messaging"

    async def template_exists(self, organization_id: str, template_id: str) -> bool:
        response = await self._request(
            "GET", f"/organizations/{organization_id}/templates/{template_id}", allow_404=True
        )
        return response is not None

    async def send_template(
        self,
        organization_id: str,
        template_id: str,
        to_email: str,
        merge_fields: dict[str, Any],
        from_name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[str]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        response = await self._request(
            "POST",
            f"/organizations/{organization_id}/emails",
            json={
                "template_id": template_id,
                "to": to_email,
                "from_name": from_name,
                "merge_fields": merge_fields,
            },
            headers=headers,
        )
        try:
            return response.json().get("message_id")
        except ValueError:
            return None


class HttpWebhookDispatcher(_ServiceClient, WebhookDispatcher):
    """Resolves endpoints from the webhook registry and POSTs signed payloads.

    The registry returns ``{"url": ..., "secret": ...}`` per endpoint;
    the per-endpoint secret is used for signing when present, otherwise
    ``WEBHOOK_SIGNING_SECRET``.
    """

    service_name = "webhooks"

    def __init__(
        self,
        *args: Any,
        signing_secret: str = "",
        delivery_client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self._signing_secret = signing_secret
        # Tenant endpoints are arbitrary URLs, so they get a client without base_url or service auth
        self._delivery = delivery_client or httpx.AsyncClient()

    async def close(self) -> None:
        await super().close()
        await self._delivery.aclose()

    async def _resolve(self, organization_id: str, endpoint_id: str) -> Optional[dict]:
        response = await self._request(
            "GET", f"/organizations/{organization_id}/endpoints/{endpoint_id}", allow_404=True
        )
        return self._json_object(response) if response is not None else None

    async def endpoint_exists(self, organization_id: str, endpoint_id: str) -> bool:
        return await self._resolve(organization_id, endpoint_id) is not None

    async def deliver(
        self,
        organization_id: str,
        endpoint_id: str,
        payload: dict[str, Any],
        delivery_id: str,
        timeout: float,
    ) -> int:
        endpoint = await self._resolve(organization_id, endpoint_id)
        if endpoint is None or not endpoint.get("url"):
            raise CollaboratorError(f"Webhook endpoint {endpoint_id} not found", retryable=False, status_code=404)

        body = json.dumps(payload, default=str).encode()
        secret = endpoint.get("secret") or self._signing_secret
        headers = (
            sign_webhook_payload(body, secret, delivery_id=delivery_id)
            if secret
            else {"Content-Type": "application/json"}
        )

        try:
            response = await self._delivery.post(endpoint["url"], content=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException:
            raise CollaboratorError(
                f"Webhook {endpoint_id} timed out after {timeout}s", retryable=True, status_code=504
            )
        except httpx.TransportError as e:
            raise CollaboratorError(f"Webhook {endpoint_id} unreachable: {e}", retryable=True, status_code=503)

        if response.is_error:
            raise CollaboratorError(
                f"Webhook {endpoint_id} returned {response.status_code}",
                retryable=_is_retryable_status(response.status_code),
                status_code=response.status_code,
            )
        return response.status_code


def build_default_collaborators() -> tuple[HttpPipelineService, HttpMessagingService, HttpWebhookDispatcher]:
    """Collaborator clients configured from settings."""
    settings = get_settings()
    timeout = settings.COLLABORATOR_TIMEOUT_SECONDS
    token = settings.SERVICE_API_TOKEN
    return (
        HttpPipelineService(settings.PIPELINE_SERVICE_URL, token=token, timeout=timeout),
        HttpMessagingService(settings.MESSAGING_SERVICE_URL, token=token, timeout=timeout),
        HttpWebhookDispatcher(
            settings.WEBHOOK_SERVICE_URL,
            token=token,
            timeout=timeout,
            signing_secret=settings.WEBHOOK_SIGNING_SECRET,
        ),
    )
