"""Pipeline actions: move a contact between stages, add and remove tags.

All three have set semantics. When the contact is already in the target
state the action succeeds without calling the Pipeline service, so a
resumed run can repeat them safely.

When follow-up events are enabled, a change that actually happened is
reported back as the CRM event it corresponds to, so other workflows can
react to it.
"""

from core.constants import TriggerEventType
from triggers.base import TriggerEvent
from actions.base_action import ActionContext, ActionResult, BaseAction


class _PipelineAction(BaseAction):

    def _follow_up(self, ctx: ActionContext, event_type: TriggerEventType, payload: dict) -> list[TriggerEvent]:
        if not self.services.emit_events:
            return []
        return [TriggerEvent(
            type=event_type,
            organization_id=ctx.organization_id,
            subject_id=ctx.subject_id,
            payload={**payload, "source": "automation", "runId": ctx.run_id},
            chain_depth=ctx.chain_depth + 1,
        )]


class MoveStageAction(_PipelineAction):
    """Move the contact to ``stage_id``."""

    action_type = "move_stage"

    async def execute(self, ctx: ActionContext) -> ActionResult:
        target = ctx.config.stage_id
        previous = ctx.subject.stage_id
        if previous == target:
            return ActionResult.success(stage_id=target, changed=False)

        await self.services.pipeline.set_stage(ctx.organization_id, ctx.subject_id, target)
        return ActionResult(
            ok=True,
            output={"stage_id": target, "from_stage_id": previous, "changed": True},
            emitted_events=self._follow_up(
                ctx,
                TriggerEventType.STAGE_CHANGED,
                {"fromStageId": previous, "toStageId": target},
            ),
        )


class AddTagAction(_PipelineAction):
    """Add ``tag_id`` to the contact."""

    action_type = "add_tag"

    async def execute(self, ctx: ActionContext) -> ActionResult:
        tag_id = ctx.config.tag_id
        if tag_id in ctx.subject.tags:
            return ActionResult.success(tag_id=tag_id, changed=False)

        await self.services.pipeline.add_tag(ctx.organization_id, ctx.subject_id, tag_id)
        return ActionResult(
            ok=True,
            output={"tag_id": tag_id, "changed": True},
            emitted_events=self._follow_up(ctx, TriggerEventType.TAG_ADDED, {"tagId": tag_id}),
        )


class RemoveTagAction(_PipelineAction):
    """Remove ``tag_id`` from the contact."""

    action_type = "remove_tag"

    async def execute(self, ctx: ActionContext) -> ActionResult:
        tag_id = ctx.config.tag_id
        if tag_id not in ctx.subject.tags:
            return ActionResult.success(tag_id=tag_id, changed=False)

        await self.services.pipeline.remove_tag(ctx.organization_id, ctx.subject_id, tag_id)
        return ActionResult(
            ok=True,
            output={"tag_id": tag_id, "changed": True},
            emitted_events=self._follow_up(ctx, TriggerEventType.TAG_REMOVED, {"tagId": tag_id}),
        )


PIPELINE_ACTION_TYPES = {
    "move_stage": MoveStageAction,
    "add_tag": AddTagAction,
    "remove_tag": RemoveTagAction,
}
