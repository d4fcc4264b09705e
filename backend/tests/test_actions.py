"""Tests for the action dispatcher and the built-in actions."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from actions.base_action import ActionServices
from actions.registry import ActionDispatcher, get_action_registry
from core.constants import NodeOutcome, TriggerEventType
from core.exceptions import CollaboratorError
from workflow.graph import WorkflowGraph

from factories import ORG_ID, edge, graph, node, trigger

ACTION_GRAPH = graph(
    [
        trigger("t1", "contact_created"),
        node("e1", "send_email", template_id="tpl-followup", from_name="Acme Sales"),
        node("m1", "move_stage", stage_id="s-won"),
        node("a1", "add_tag", tag_id="vip"),
        node("r1", "remove_tag", tag_id="nurture"),
        node("w1", "webhook", endpoint_id="ep-crm-sync"),
    ],
    [edge("t1", "e1"), edge("e1", "m1"), edge("m1", "a1"), edge("a1", "r1"), edge("r1", "w1")],
)


@pytest.fixture
def nodes():
    return WorkflowGraph.from_json(ACTION_GRAPH)


@pytest_asyncio.fixture
async def run(runtime, publish, pipeline):
    definition = await publish(ACTION_GRAPH)
    return await runtime.store.create(definition, subject_id="c-1", start_node_id="t1", trigger_event={"type": "contact_created"})


@pytest.fixture
def subject(pipeline):
    return pipeline.add_subject("c-1", stage_id="s-new", tags={"nurture"}, full_name="Ada Lovelace")


@pytest.mark.unit
def test_registry_covers_every_action_node():
    assert set(get_action_registry().available_types) == {
        "send_email", "move_stage", "add_tag", "remove_tag", "webhook",
    }


class TestSendEmail:

    async def test_sends_template_to_contact(self, runtime, run, nodes, subject, messaging):
        result = await runtime.dispatcher.dispatch(run, nodes.get("e1"), subject, attempt=1)

        assert result.ok
        assert result.output["message_id"] == "msg-1"
        assert messaging.sent[0]["to_email"] == "c-1@example.com"
        assert messaging.sent[0]["idempotency_key"] == f"{run.id}:e1"

    async def test_skipped_once_delivered(self, runtime, run, nodes, subject, messaging):
        await runtime.audit.record(run.id, "e1", "send_email", 1, NodeOutcome.SUCCESS)

        result = await runtime.dispatcher.dispatch(run, nodes.get("e1"), subject, attempt=2)

        assert result.ok and result.skipped
        assert messaging.sent == []

    async def test_failed_attempt_does_not_block_retry(self, runtime, run, nodes, subject, messaging):
        await runtime.audit.record(run.id, "e1", "send_email", 1, NodeOutcome.FAILED, error="timeout")

        result = await runtime.dispatcher.dispatch(run, nodes.get("e1"), subject, attempt=2)

        assert result.ok and not result.skipped
        assert len(messaging.sent) == 1

    async def test_unknown_template_is_fatal(self, runtime, run, nodes, subject, messaging):
        messaging.templates.clear()

        result = await runtime.dispatcher.dispatch(run, nodes.get("e1"), subject, attempt=1)

        assert not result.ok
        assert result.retryable is False


class TestPipelineActions:

    async def test_move_stage_reports_follow_up(self, runtime, run, nodes, subject, pipeline):
        result = await runtime.dispatcher.dispatch(run, nodes.get("m1"), subject, attempt=1)

        assert result.ok
        assert pipeline.subjects[(ORG_ID, "c-1")].stage_id == "s-won"
        [follow_up] = result.emitted_events
        assert follow_up.type == TriggerEventType.STAGE_CHANGED
        assert follow_up.payload["fromStageId"] == "s-new"
        assert follow_up.payload["toStageId"] == "s-won"
        assert follow_up.chain_depth == run.chain_depth + 1

    async def test_add_and_remove_tag(self, runtime, run, nodes, subject, pipeline):
        added = await runtime.dispatcher.dispatch(run, nodes.get("a1"), subject, attempt=1)
        removed = await runtime.dispatcher.dispatch(run, nodes.get("r1"), subject, attempt=1)

        assert added.ok and removed.ok
        assert pipeline.subjects[(ORG_ID, "c-1")].tags == frozenset({"vip"})
        assert added.emitted_events[0].type == TriggerEventType.TAG_ADDED
        assert removed.emitted_events[0].type == TriggerEventType.TAG_REMOVED

    async def test_set_semantics(self, runtime, run, nodes, pipeline):
        subject = pipeline.add_subject("c-1", stage_id="s-won", tags={"vip"})

        for node_id in ("m1", "a1", "r1"):
            result = await runtime.dispatcher.dispatch(run, nodes.get(node_id), subject, attempt=1)
            assert result.ok
            assert result.output["changed"] is False
            assert result.emitted_events == []
        assert pipeline.calls == []

    async def test_pipeline_outage_is_retryable(self, runtime, run, nodes, subject, pipeline):
        pipeline.write_errors.append(CollaboratorError("pipeline returned 502", retryable=True, status_code=502))

        result = await runtime.dispatcher.dispatch(run, nodes.get("a1"), subject, attempt=1)

        assert not result.ok
        assert result.retryable is True


class TestDispatcher:

    async def test_attempt_timeout_is_retryable(self, runtime, run, nodes, subject, messaging):
        async def slow_send(*args, **kwargs):
            await asyncio.sleep(1)

        messaging.send_template = slow_send
        dispatcher = ActionDispatcher(
            runtime.dispatcher.services,
            runtime.audit,
            SimpleNamespace(ACTION_TIMEOUT_SECONDS=0.01, WEBHOOK_TIMEOUT_SECONDS=0.01),
        )

        result = await dispatcher.dispatch(run, nodes.get("e1"), subject, attempt=1)

        assert not result.ok
        assert result.retryable is True
        assert "timed out" in result.error

    async def test_follow_ups_can_be_disabled(self, runtime, run, nodes, subject, pipeline, messaging, webhooks):
        services = ActionServices(pipeline, messaging, webhooks, emit_events=False)
        dispatcher = ActionDispatcher(services, runtime.audit, runtime.settings)

        result = await dispatcher.dispatch(run, nodes.get("a1"), subject, attempt=1)

        assert result.ok
        assert result.emitted_events == []

    async def test_webhook_uses_stable_delivery_id(self, runtime, run, nodes, subject, webhooks):
        for attempt in (1, 2):
            webhooks.failures = [asyncio.TimeoutError()] if attempt == 1 else []
            await runtime.dispatcher.dispatch(run, nodes.get("w1"), subject, attempt=attempt)

        assert webhooks.attempts == 2
        assert webhooks.deliveries[0]["delivery_id"] == f"{run.id}:w1"
        assert webhooks.deliveries[0]["payload"]["run"]["attempt"] == 2
