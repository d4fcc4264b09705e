"""Run executor: advances workflow runs node by node.

A run always sits on one node (``current_node_id``). ``advance`` keeps
executing the node the run sits on until the run stops being
``running``:

- trigger:    step to its single outgoing edge
- condition:  fetch the contact fresh, evaluate, follow the true/false edge
- delay:      persist ``resume_at`` and suspend; the Delay Scheduler
              calls ``resume`` once it is due
- action:     dispatch with retries; on success step to the next node,
              on exhaustion or a fatal error fail the run

A node with no outgoing edge completes the run. Every state write is
conditional on the run still being ``running``, which is how a cancel
issued from elsewhere stops the loop between nodes.

Node outcomes go to the audit trail; failures never escape ``advance``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from core.constants import EdgeHandle, NodeOutcome, NodeType, RunState
from core.exceptions import CollaboratorError, ConditionEvaluationError, GraphParseError
from core.logging_config import bind_run_context
from core.utils import utcnow_naive
from actions.base_action import ActionResult
from actions.registry import ActionDispatcher
from integrations.base import PipelineService, Subject
from triggers.base import TriggerEvent
from workflow.audit import RunAuditLog
from workflow.conditions import ConditionEvaluator
from workflow.graph import Node, WorkflowGraph
from workflow.retry_strategies import RETRY_PRESETS, RetryStrategy, execute_with_retry, is_transient_error
from workflow.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class AdvanceOutcome:
    """What a single ``advance`` call did."""

    run_id: str
    state: Optional[RunState] = None
    steps: int = 0
    emitted_events: list[TriggerEvent] = field(default_factory=list)
    error: Optional[str] = None


class _Stop(Exception):
    """Internal: the run left the running state, stop the loop."""


class RunExecutor:
    """Executes runs against their definition version's graph.

    Args:
        store: Run persistence
        audit: Node execution trail
        dispatcher: Action dispatcher
        pipeline: Source of fresh contact state
        retry_strategy: Policy for retryable action failures
        clock: Returns the current naive-UTC time
        sleep: Awaitable used between retry attempts
    """

    def __init__(
        self,
        store: RunStore,
        audit: RunAuditLog,
        dispatcher: ActionDispatcher,
        pipeline: PipelineService,
        retry_strategy: Optional[RetryStrategy] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Callable = utcnow_naive,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.store = store
        self.audit = audit
        self.dispatcher = dispatcher
        self.pipeline = pipeline
        self.retry_strategy = retry_strategy or RETRY_PRESETS["actions"]
        self.subject_read_strategy = RETRY_PRESETS["collaborator_read"]
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock
        self._sleep = sleep
        self._graphs: dict[str, WorkflowGraph] = {}
        self._on_events: Optional[Callable[[list[TriggerEvent]], Awaitable]] = None

    def set_event_callback(self, callback: Callable[[list[TriggerEvent]], Awaitable]) -> None:
        """Receive follow-up events produced by actions after each advance."""
        self._on_events = callback

    # ─── Entry points ───────────────────────────────────────────────────

    async def advance(self, run_id: str) -> AdvanceOutcome:
        """Execute the run from its current node until it stops running."""
        return await self._run(run_id, resuming=False)

    async def resume(self, run_id: str) -> AdvanceOutcome:
        """Continue a run the scheduler has just claimed.

        If the run sits on a delay node, the delay is over: step past it
        instead of suspending again.
        """
        return await self._run(run_id, resuming=True)

    async def _run(self, run_id: str, resuming: bool) -> AdvanceOutcome:
        outcome = AdvanceOutcome(run_id=run_id)
        run = await self.store.get(run_id)
        if run is None:
            logger.warning(f"Run {run_id} not found")
            return outcome
        if run.state != RunState.RUNNING.value:
            outcome.state = RunState(run.state)
            return outcome

        with bind_run_context(run.id, run.workflow_id, run.subject_id):
            try:
                graph = await self._graph_for(run)
                await self._loop(run, graph, outcome, resuming)
            except _Stop:
                pass
            except GraphParseError as e:
                await self._fail(run, f"Definition graph is invalid: {e.message}", outcome)
            except Exception as e:
                logger.error(f"Run {run_id} crashed on node {run.current_node_id}: {e}", exc_info=True)
                await self._fail(run, f"Internal error on node {run.current_node_id}: {e}", outcome)

            if outcome.state is None:
                outcome.state = await self.store.get_state(run_id)

        if outcome.emitted_events and self._on_events is not None:
            try:
                await self._on_events(outcome.emitted_events)
            except Exception as e:
                logger.error(f"Follow-up event routing failed for run {run_id}: {e}", exc_info=True)
        return outcome

    # ─── Main loop ──────────────────────────────────────────────────────

    async def _loop(self, run, graph: WorkflowGraph, outcome: AdvanceOutcome, resuming: bool) -> None:
        max_steps = len(graph) + 1

        while True:
            state = await self.store.get_state(run.id)
            if state != RunState.RUNNING:
                logger.info(f"Run {run.id} is {state.value if state else 'gone'}, stopping")
                outcome.state = state
                return

            if outcome.steps >= max_steps:
                await self._fail(run, f"Run exceeded {max_steps} steps in one advance", outcome)
                return
            outcome.steps += 1

            node = graph.get(run.current_node_id)
            if node is None:
                await self._fail(run, f"Node {run.current_node_id} is not in the graph", outcome)
                return

            if node.type == NodeType.TRIGGER:
                await self._goto(run, graph.next_node_id(node.id), outcome)
            elif node.type == NodeType.CONDITION:
                await self._execute_condition(run, node, graph, outcome)
            elif node.type == NodeType.DELAY:
                # A recorded delay on a running run means it was already claimed once
                if resuming or await self.audit.has_success(run.id, node.id):
                    resuming = False
                    await self._goto(run, graph.next_node_id(node.id), outcome)
                else:
                    await self._execute_delay(run, node, outcome)
                    return
            elif node.is_action:
                await self._execute_action(run, node, graph, outcome)
            else:
                await self._fail(run, f"Unsupported node type {node.type.value}", outcome)
                return

            resuming = False
            if outcome.state is not None:
                return

    async def _goto(self, run, next_node_id: Optional[str], outcome: AdvanceOutcome) -> None:
        """Move to ``next_node_id`` or complete when there is none."""
        if next_node_id is None:
            if await self.store.complete(run.id):
                logger.info(f"Run {run.id} completed")
                outcome.state = RunState.COMPLETED
                return
            raise _Stop()

        if not await self.store.move_to(run.id, next_node_id):
            raise _Stop()
        run.current_node_id = next_node_id

    async def _fail(self, run, error: str, outcome: AdvanceOutcome) -> None:
        outcome.error = error
        if await self.store.fail(run.id, error):
            logger.warning(f"Run {run.id} failed: {error}")
            outcome.state = RunState.FAILED
        else:
            outcome.state = await self.store.get_state(run.id)

    # ─── Node types ─────────────────────────────────────────────────────

    async def _fetch_subject(self, run) -> Optional[Subject]:
        return await execute_with_retry(
            self.pipeline.get_subject,
            self.subject_read_strategy,
            run.organization_id,
            run.subject_id,
        )

    async def _execute_condition(self, run, node: Node, graph: WorkflowGraph, outcome: AdvanceOutcome) -> None:
        attempt = await self.audit.next_attempt(run.id, node.id)
        try:
            subject = await self._fetch_subject(run)
            if subject is None:
                raise ConditionEvaluationError(f"Contact {run.subject_id} not found")
            result = self.evaluator.evaluate(node.config, subject)
        except (ConditionEvaluationError, CollaboratorError) as e:
            await self._fail_condition(run, node, attempt, e.message, outcome)
            return
        except Exception as e:
            logger.error(f"Run {run.id} condition {node.id} raised {type(e).__name__}: {e}", exc_info=True)
            await self._fail_condition(run, node, attempt, f"{type(e).__name__}: {e}", outcome)
            return

        handle = EdgeHandle.TRUE if result else EdgeHandle.FALSE
        await self.audit.record(
            run.id,
            node.id,
            node.type.value,
            attempt,
            NodeOutcome.SUCCESS,
            output={"result": result, "branch": handle.value},
        )
        await self._goto(run, graph.next_node_id(node.id, handle), outcome)

    async def _fail_condition(self, run, node: Node, attempt: int, error: str, outcome: AdvanceOutcome) -> None:
        await self.audit.record(run.id, node.id, node.type.value, attempt, NodeOutcome.FAILED, error=error)
        await self._fail(run, f"Condition {node.id} could not be evaluated: {error}", outcome)

    async def _execute_delay(self, run, node: Node, outcome: AdvanceOutcome) -> None:
        resume_at = self.clock() + timedelta(minutes=node.config.duration_minutes)
        if not await self.store.suspend(run.id, node.id, resume_at):
            raise _Stop()

        attempt = await self.audit.next_attempt(run.id, node.id)
        await self.audit.record(
            run.id,
            node.id,
            node.type.value,
            attempt,
            NodeOutcome.SUCCESS,
            output={"resume_at": resume_at.isoformat()},
        )
        logger.info(f"Run {run.id} suspended on {node.id} until {resume_at.isoformat()}")
        outcome.state = RunState.SUSPENDED

    async def _execute_action(self, run, node: Node, graph: WorkflowGraph, outcome: AdvanceOutcome) -> None:
        strategy = self.retry_strategy
        attempt = await self.audit.next_attempt(run.id, node.id)
        if attempt > strategy.max_attempts and not await self.audit.has_success(run.id, node.id):
            await self._fail(run, f"{node.type.value} node {node.id} already used all {strategy.max_attempts} attempts", outcome)
            return

        while True:
            result = await self._attempt_action(run, node, attempt)

            if result.skipped:
                recorded = NodeOutcome.SKIPPED
            elif result.ok:
                recorded = NodeOutcome.SUCCESS
            else:
                recorded = NodeOutcome.FAILED
            await self.audit.record(
                run.id,
                node.id,
                node.type.value,
                attempt,
                recorded,
                error=result.error,
                output=result.output or None,
            )

            if result.ok:
                outcome.emitted_events.extend(result.emitted_events)
                await self._goto(run, graph.next_node_id(node.id), outcome)
                return

            if not strategy.should_retry(attempt, retryable=result.retryable):
                kind = "retries exhausted" if result.retryable else "fatal error"
                await self._fail(
                    run,
                    f"{node.type.value} node {node.id} failed on attempt {attempt} ({kind}): {result.error}",
                    outcome,
                )
                return

            delay = strategy.compute_delay(attempt)
            logger.info(f"Run {run.id} node {node.id} attempt {attempt} failed, retrying in {delay}s")
            await self._sleep(delay)

            state = await self.store.get_state(run.id)
            if state != RunState.RUNNING:
                outcome.state = state
                raise _Stop()
            attempt += 1

    async def _attempt_action(self, run, node: Node, attempt: int) -> ActionResult:
        try:
            subject = await self.pipeline.get_subject(run.organization_id, run.subject_id)
        except Exception as e:
            return ActionResult.failure(f"Could not load contact: {e}", retryable=is_transient_error(e))
        if subject is None:
            return ActionResult.failure(f"Contact {run.subject_id} not found")
        return await self.dispatcher.dispatch(run, node, subject, attempt)

    # ─── Graph cache ────────────────────────────────────────────────────

    async def _graph_for(self, run) -> WorkflowGraph:
        graph = self._graphs.get(run.definition_id)
        if graph is None:
            definition = await self.store.get_definition(run.definition_id)
            if definition is None:
                raise GraphParseError([f"definition {run.definition_id} not found"])
            graph = WorkflowGraph.from_json(definition.graph)
            self._graphs[run.definition_id] = graph
        return graph

    def cached_graph(self, definition_id: str) -> Optional[WorkflowGraph]:
        return self._graphs.get(definition_id)

    def cache_graph(self, definition_id: str, graph: WorkflowGraph) -> None:
        """Seed the cache with a graph already parsed elsewhere."""
        self._graphs.setdefault(definition_id, graph)
