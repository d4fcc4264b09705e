"""Call a tenant-registered webhook endpoint."""

from actions.base_action import ActionContext, ActionResult, BaseAction


class WebhookAction(BaseAction):
    """POST the triggering event, the contact and run details to an endpoint.

    Payload::

        {"event": {...trigger event...},
         "subject": {...contact...},
         "run": {"id": ..., "node_id": ..., "attempt": ...}}

    A timeout or a 5xx from the endpoint is retryable; a 4xx is not.
    """

    action_type = "webhook"
    idempotent = False

    async def execute(self, ctx: ActionContext) -> ActionResult:
        payload = {
            "event": ctx.trigger_event,
            "subject": ctx.subject.to_dict(),
            "run": {"id": ctx.run_id, "node_id": ctx.node_id, "attempt": ctx.attempt},
        }
        status_code = await self.services.webhooks.deliver(
            ctx.organization_id,
            ctx.config.endpoint_id,
            payload,
            delivery_id=ctx.idempotency_key,
            timeout=self.services.webhook_timeout,
        )
        return ActionResult.success(endpoint_id=ctx.config.endpoint_id, status_code=status_code)

    def timeout(self, settings) -> float:
        return settings.WEBHOOK_TIMEOUT_SECONDS


WEBHOOK_ACTION_TYPES = {
    "webhook": WebhookAction,
}
