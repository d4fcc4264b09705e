"""Tests for the run executor: branching, retries, failures and cancellation."""

import asyncio

import httpx
import pytest

from app.config import get_settings
from core.constants import NodeOutcome, RunState
from core.exceptions import CollaboratorError
from services.run_service import RunService
from workflow.graph import WorkflowGraph
from workflow.retry_strategies import RetryStrategy

from factories import ORG_ID, delay_graph, edge, event, graph, node, team_size_graph, trigger, webhook_graph


def outcomes(history, node_id):
    return [entry.outcome for entry in history if entry.node_id == node_id]


def approved(subject_id="c-1"):
    return event("stage_changed", subject_id, toStageId="s-approved")


class TestConditionBranching:

    async def test_small_team_gets_tagged(self, runtime, publish, pipeline, messaging):
        pipeline.add_subject("c-1", custom_fields={"team_size": "1-5"})
        await publish(team_size_graph())

        result = await runtime.handle_event(approved())

        assert len(result.runs) == 1
        assert result.outcomes[0].state == RunState.COMPLETED
        assert "small-biz" in pipeline.subjects[(ORG_ID, "c-1")].tags
        assert messaging.sent == []

        history = await runtime.audit.history(result.runs[0].id)
        assert [(e.node_id, e.outcome) for e in history] == [("c1", "success"), ("a1", "success")]
        assert history[0].output == {"result": True, "branch": "true"}

    async def test_large_team_gets_welcome_email(self, runtime, publish, pipeline, messaging):
        pipeline.add_subject("c-1", custom_fields={"team_size": "50+"})
        await publish(team_size_graph())

        result = await runtime.handle_event(approved())
        run = result.runs[0]

        assert result.outcomes[0].state == RunState.COMPLETED
        assert len(messaging.sent) == 1
        sent = messaging.sent[0]
        assert sent["template_id"] == "enterprise-welcome"
        assert sent["to_email"] == "c-1@example.com"
        assert sent["idempotency_key"] == f"{run.id}:e1"
        assert "small-biz" not in pipeline.subjects[(ORG_ID, "c-1")].tags

    async def test_condition_reads_fresh_contact_state(self, runtime, publish, pipeline, messaging):
        subject = pipeline.add_subject("c-1", custom_fields={"team_size": "1-5"})
        await publish(team_size_graph())
        subject.custom_fields["team_size"] = "50+"

        await runtime.handle_event(approved())

        assert len(messaging.sent) == 1

    async def test_missing_field_fails_the_run(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1")
        await publish(team_size_graph())

        result = await runtime.handle_event(approved())
        run = await runtime.store.get(result.runs[0].id)

        assert run.state == RunState.FAILED.value
        assert "team_size" in run.error_message
        assert run.active_key is None
        history = await runtime.audit.history(run.id)
        assert outcomes(history, "c1") == [NodeOutcome.FAILED.value]

    async def test_unknown_contact_fails_the_run(self, runtime, publish):
        await publish(team_size_graph())

        result = await runtime.handle_event(approved("c-ghost"))

        assert result.outcomes[0].state == RunState.FAILED
        assert "not found" in result.outcomes[0].error

    async def test_unreadable_contact_is_recorded_on_the_condition(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1", custom_fields={"team_size": "1-5"})
        pipeline.get_subject_errors = [ValueError("Expecting value: line 1 column 1 (char 0)")]
        await publish(team_size_graph())

        result = await runtime.handle_event(approved())
        run = await runtime.store.get(result.runs[0].id)

        assert result.outcomes[0].state == RunState.FAILED
        assert run.state == RunState.FAILED.value
        assert "ValueError" in run.error_message
        assert run.active_key is None
        history = await runtime.audit.history(run.id)
        assert outcomes(history, "c1") == [NodeOutcome.FAILED.value]
        assert "Expecting value" in history[0].error


class TestActionRetries:

    async def test_webhook_succeeds_on_fifth_attempt(self, runtime, publish, pipeline, webhooks):
        pipeline.add_subject("c-1", tags={"vip"})
        await publish(webhook_graph())
        webhooks.failures = [
            httpx.ReadTimeout("slow"),
            asyncio.TimeoutError(),
            CollaboratorError("endpoint returned 503", retryable=True, status_code=503),
            httpx.ConnectError("refused"),
        ]

        result = await runtime.handle_event(event("tag_added", tagId="vip"))
        run = result.runs[0]

        assert result.outcomes[0].state == RunState.COMPLETED
        assert webhooks.attempts == 5
        assert len(webhooks.deliveries) == 1
        assert webhooks.deliveries[0]["delivery_id"] == f"{run.id}:w1"

        history = await runtime.audit.history(run.id)
        assert outcomes(history, "w1") == ["failed"] * 4 + ["success"]
        assert [e.attempt for e in history] == [1, 2, 3, 4, 5]

    async def test_webhook_payload(self, runtime, publish, pipeline, webhooks):
        pipeline.add_subject("c-1", tags={"vip"}, company="Initech")
        await publish(webhook_graph())

        await runtime.handle_event(event("tag_added", tagId="vip"))

        payload = webhooks.deliveries[0]["payload"]
        assert payload["event"]["type"] == "tag_added"
        assert payload["subject"]["fields"]["company"] == "Initech"
        assert payload["run"]["node_id"] == "w1"
        assert payload["run"]["attempt"] == 1

    async def test_retries_exhausted_fails_the_run(self, runtime, publish, pipeline, webhooks):
        pipeline.add_subject("c-1", tags={"vip"})
        await publish(webhook_graph())
        webhooks.failures = [httpx.ReadTimeout("slow") for _ in range(5)]

        result = await runtime.handle_event(event("tag_added", tagId="vip"))
        run = await runtime.store.get(result.runs[0].id)

        assert run.state == RunState.FAILED.value
        assert "retries exhausted" in run.error_message
        assert webhooks.attempts == 5
        assert outcomes(await runtime.audit.history(run.id), "w1") == ["failed"] * 5

    async def test_fatal_error_is_not_retried(self, runtime, publish, pipeline, messaging):
        pipeline.add_subject("c-1", custom_fields={"team_size": "50+"})
        await publish(team_size_graph())
        messaging.failures = [CollaboratorError("invalid merge field", retryable=False, status_code=400)]

        result = await runtime.handle_event(approved())
        run = await runtime.store.get(result.runs[0].id)

        assert run.state == RunState.FAILED.value
        assert "fatal error" in run.error_message
        assert outcomes(await runtime.audit.history(run.id), "e1") == ["failed"]

    async def test_contact_without_email_fails(self, runtime, publish, pipeline, messaging):
        pipeline.add_subject("c-1", custom_fields={"team_size": "50+"}, email="")
        await publish(team_size_graph())

        result = await runtime.handle_event(approved())

        assert result.outcomes[0].state == RunState.FAILED
        assert messaging.sent == []

    async def test_retry_waits_between_attempts(self, make_runtime, session_factory, publish, pipeline, webhooks):
        waits = []

        async def sleep(delay):
            waits.append(delay)

        runtime = make_runtime(
            session_factory,
            retry_strategy=RetryStrategy.exponential(max_attempts=3, base_delay=2.0, max_delay=60.0, jitter=False),
            sleep=sleep,
        )
        pipeline.add_subject("c-1", tags={"vip"})
        await publish(webhook_graph())
        webhooks.failures = [httpx.ReadTimeout("slow"), httpx.ReadTimeout("slow")]

        result = await runtime.handle_event(event("tag_added", tagId="vip"))

        assert result.outcomes[0].state == RunState.COMPLETED
        assert waits == [2.0, 4.0]


class TestStepBudget:

    async def test_linear_run_takes_one_step_per_node(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1")
        await publish(graph(
            [
                trigger("t1", "contact_created"),
                node("a1", "add_tag", tag_id="vip"),
                node("m1", "move_stage", stage_id="s-won"),
            ],
            [edge("t1", "a1"), edge("a1", "m1")],
        ))

        result = await runtime.handle_event(event("contact_created"))

        assert result.outcomes[0].state == RunState.COMPLETED
        assert result.outcomes[0].steps == 3

    async def test_branching_run_counts_only_the_taken_branch(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1", custom_fields={"team_size": "1-5"})
        await publish(team_size_graph())

        result = await runtime.handle_event(approved())

        assert result.outcomes[0].state == RunState.COMPLETED
        assert result.outcomes[0].steps == 3

    async def test_delay_ends_the_advance(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1")
        await publish(delay_graph())

        result = await runtime.handle_event(event("contact_created"))

        assert result.outcomes[0].state == RunState.SUSPENDED
        assert result.outcomes[0].steps == 2

    async def test_looping_graph_is_stopped_at_the_cap(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1")
        definition = await publish(graph(
            [trigger("t1", "contact_created"), node("a1", "add_tag", tag_id="vip")],
            [edge("t1", "a1")],
        ))
        # Published graphs are acyclic; seed the executor with a loop directly
        looping = WorkflowGraph.from_json(graph(
            [
                trigger("t1", "contact_created"),
                node("a1", "add_tag", tag_id="vip"),
                node("a2", "add_tag", tag_id="nurture"),
            ],
            [edge("t1", "a1"), edge("a1", "a2"), edge("a2", "a1")],
        ))
        runtime.executor.cache_graph(definition.id, looping)

        result = await runtime.handle_event(event("contact_created"))
        outcome = result.outcomes[0]
        run = await runtime.store.get(outcome.run_id)

        assert outcome.state == RunState.FAILED
        assert outcome.steps == len(looping) + 1
        assert "exceeded 4 steps" in run.error_message
        assert run.active_key is None


class TestCancellation:

    async def test_cancel_between_nodes(self, runtime, publish, pipeline, messaging):
        pipeline.add_subject("c-1")
        await publish(graph(
            [
                trigger("t1", "contact_created"),
                node("e1", "send_email", template_id="tpl-followup"),
                node("m1", "move_stage", stage_id="s-qualified"),
            ],
            [edge("t1", "e1"), edge("e1", "m1")],
        ))
        send = messaging.send_template

        async def send_then_cancel(*args, **kwargs):
            message_id = await send(*args, **kwargs)
            await runtime.cancel_run(kwargs["idempotency_key"].split(":")[0])
            return message_id

        messaging.send_template = send_then_cancel

        result = await runtime.handle_event(event("contact_created"))
        run = await runtime.store.get(result.runs[0].id)

        assert run.state == RunState.CANCELLED.value
        assert run.current_node_id == "e1"
        assert len(messaging.sent) == 1
        assert not any(call[0] == "set_stage" for call in pipeline.calls)

    async def test_cancel_terminal_run_is_refused(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1", custom_fields={"team_size": "1-5"})
        await publish(team_size_graph())
        result = await runtime.handle_event(approved())

        assert await runtime.cancel_run(result.runs[0].id) is False
        assert await runtime.store.get_state(result.runs[0].id) == RunState.COMPLETED

    async def test_advance_of_cancelled_run_is_a_no_op(self, runtime, publish, pipeline):
        pipeline.add_subject("c-1")
        await publish(delay_graph())
        result = await runtime.handle_event(event("contact_created"))
        run_id = result.runs[0].id
        await runtime.cancel_run(run_id)

        outcome = await runtime.executor.advance(run_id)

        assert outcome.state == RunState.CANCELLED
        assert outcome.steps == 0


class TestFollowUpEvents:

    async def test_action_starts_other_workflow(self, runtime, publish, pipeline, webhooks, session_factory):
        pipeline.add_subject("c-1")
        await publish(graph(
            [trigger("t1", "stage_changed", to_stage_id="s-approved"), node("a1", "add_tag", tag_id="vip")],
            [edge("t1", "a1")],
        ), name="Tag approved")
        await publish(webhook_graph(), name="Sync VIPs")

        await runtime.handle_event(approved())

        assert len(webhooks.deliveries) == 1
        async with session_factory() as session:
            runs, total = await RunService(session).list_runs(ORG_ID, subject_id="c-1")
        assert total == 2
        assert sorted(r.chain_depth for r in runs) == [0, 1]
        assert all(r.state == RunState.COMPLETED.value for r in runs)

    async def test_unchanged_state_emits_nothing(self, runtime, publish, pipeline, webhooks):
        pipeline.add_subject("c-1", tags={"vip"})
        await publish(graph(
            [trigger("t1", "stage_changed", to_stage_id="s-approved"), node("a1", "add_tag", tag_id="vip")],
            [edge("t1", "a1")],
        ))
        await publish(webhook_graph())

        await runtime.handle_event(approved())

        assert webhooks.deliveries == []

    async def test_cascade_stops_at_max_chain_depth(self, runtime, publish, pipeline, session_factory):
        pipeline.add_subject("c-1", tags={"vip"})
        await publish(graph(
            [trigger("t1", "tag_added", tag_id="vip"), node("r1", "remove_tag", tag_id="vip")],
            [edge("t1", "r1")],
        ), name="Remove vip")
        await publish(graph(
            [trigger("t1", "tag_removed", tag_id="vip"), node("a1", "add_tag", tag_id="vip")],
            [edge("t1", "a1")],
        ), name="Add vip")

        await runtime.handle_event(event("tag_added", tagId="vip"))

        async with session_factory() as session:
            runs, total = await RunService(session).list_runs(ORG_ID, subject_id="c-1")
        max_depth = get_settings().MAX_TRIGGER_CHAIN_DEPTH
        assert total == max_depth + 1
        assert sorted(r.chain_depth for r in runs) == list(range(max_depth + 1))

    async def test_cascade_disabled(self, make_runtime, session_factory, publish, pipeline, webhooks):
        settings = get_settings().model_copy(update={"EMIT_CASCADE_EVENTS": False})
        runtime = make_runtime(session_factory, settings=settings)
        pipeline.add_subject("c-1")
        await publish(graph(
            [trigger("t1", "stage_changed", to_stage_id="s-approved"), node("a1", "add_tag", tag_id="vip")],
            [edge("t1", "a1")],
        ), name="Tag approved")
        await publish(webhook_graph(), name="Sync VIPs")

        await runtime.handle_event(approved())

        assert "vip" in pipeline.subjects[(ORG_ID, "c-1")].tags
        assert webhooks.deliveries == []


@pytest.mark.parametrize("stage", ["s-approved", "s-won"])
async def test_move_stage_action(runtime, publish, pipeline, stage):
    pipeline.add_subject("c-1", stage_id="s-approved")
    await publish(graph(
        [trigger("t1", "contact_created"), node("m1", "move_stage", stage_id=stage)],
        [edge("t1", "m1")],
    ))

    result = await runtime.handle_event(event("contact_created"))

    assert result.outcomes[0].state == RunState.COMPLETED
    assert pipeline.subjects[(ORG_ID, "c-1")].stage_id == stage
    set_stage_calls = [c for c in pipeline.calls if c[0] == "set_stage"]
    assert len(set_stage_calls) == (0 if stage == "s-approved" else 1)
