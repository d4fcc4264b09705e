"""Send a templated email to the contact through the Messaging service."""

from actions.base_action import ActionContext, ActionResult, BaseAction


class SendEmailAction(BaseAction):
    """Render ``template_id`` with the contact's merge fields and send it.

    Not idempotent: the dispatcher skips it once a previous attempt of the
    same node has succeeded. The idempotency key is also passed to the
    Messaging service so it can drop a duplicate of its own.
    """

    action_type = "send_email"
    idempotent = False

    async def execute(self, ctx: ActionContext) -> ActionResult:
        email = ctx.subject.lookup("email")
        if not isinstance(email, str) or not email.strip():
            return ActionResult.failure(f"Contact {ctx.subject_id} has no email address")

        message_id = await self.services.messaging.send_template(
            ctx.organization_id,
            ctx.config.template_id,
            to_email=email.strip(),
            merge_fields=ctx.subject.merge_fields(),
            from_name=ctx.config.from_name,
            idempotency_key=ctx.idempotency_key,
        )
        return ActionResult.success(template_id=ctx.config.template_id, message_id=message_id)


EMAIL_ACTION_TYPES = {
    "send_email": SendEmailAction,
}
