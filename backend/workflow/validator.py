"""
Graph validation.

Gatekeeper between ``draft`` and ``published``: a definition is only
published when ``validate`` returns ``ok``. Structural checks are pure
and run synchronously; reference checks ask the collaborators whether
the stages, tags, templates and endpoints a graph points at exist in
the tenant.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from core.constants import ConditionOperator, EdgeHandle, NodeType, TriggerEventType
from core.exceptions import GraphParseError
from integrations.base import MessagingService, PipelineService, WebhookDispatcher
from workflow.graph import (
    ConditionConfig,
    DelayConfig,
    MoveStageConfig,
    SendEmailConfig,
    TagConfig,
    TriggerConfig,
    WebhookConfig,
    WorkflowGraph,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GraphError:
    """A single validation problem."""

    code: str
    message: str
    node_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "node_id": self.node_id}


@dataclass
class ValidationResult:
    ok: bool
    errors: list[GraphError] = field(default_factory=list)
    graph: Optional[WorkflowGraph] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "errors": [e.to_dict() for e in self.errors]}


# ─── Structural checks ──────────────────────────────────────────────────────


def _check_trigger(graph: WorkflowGraph) -> list[GraphError]:
    triggers = graph.trigger_nodes()
    if not triggers:
        return [GraphError("missing_trigger", "Workflow must have a trigger node")]
    if len(triggers) > 1:
        return [
            GraphError("multiple_triggers", "Workflow must have exactly one trigger node", node.id)
            for node in triggers[1:]
        ]
    trigger = triggers[0]
    if graph.incoming(trigger.id):
        return [GraphError("trigger_has_incoming", "Trigger node cannot have incoming edges", trigger.id)]
    return []


def _check_reachability(graph: WorkflowGraph) -> list[GraphError]:
    trigger = graph.trigger
    if trigger is None:
        return []

    start = graph.index_of(trigger.id)
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in graph.successors(current):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)

    errors = []
    for i, node in enumerate(graph.nodes):
        if node.type == NodeType.TRIGGER:
            continue
        if not graph.incoming(node.id):
            errors.append(GraphError("no_incoming_edge", "Node has no incoming edge", node.id))
        elif i not in seen:
            errors.append(GraphError("unreachable", "Node is not reachable from the trigger", node.id))
    return errors


def _check_edges(graph: WorkflowGraph) -> list[GraphError]:
    errors = []
    for node in graph.nodes:
        outgoing = graph.outgoing(node.id)
        if node.type == NodeType.CONDITION:
            handles = sorted(edge.handle.value for edge in outgoing)
            if handles != [EdgeHandle.FALSE.value, EdgeHandle.TRUE.value]:
                errors.append(GraphError(
                    "condition_branches",
                    "Condition node needs exactly one 'true' and one 'false' edge",
                    node.id,
                ))
            continue
        if len(outgoing) > 1:
            errors.append(GraphError("multiple_outgoing", "Node can have at most one outgoing edge", node.id))
        if any(edge.handle != EdgeHandle.DEFAULT for edge in outgoing):
            errors.append(GraphError("invalid_handle", "Only condition nodes can branch", node.id))
    return errors


def _check_cycles(graph: WorkflowGraph) -> list[GraphError]:
    """Iterative DFS with an explicit recursion stack."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = [WHITE] * len(graph.nodes)
    errors = []

    for root in range(len(graph.nodes)):
        if color[root] != WHITE:
            continue
        color[root] = GREY
        stack = [(root, iter(graph.successors(root)))]
        while stack:
            current, children = stack[-1]
            advanced = False
            for child in children:
                if color[child] == GREY:
                    errors.append(GraphError(
                        "cycle",
                        f"Edge {graph.nodes[current].id} -> {graph.nodes[child].id} creates a cycle",
                        graph.nodes[child].id,
                    ))
                elif color[child] == WHITE:
                    color[child] = GREY
                    stack.append((child, iter(graph.successors(child))))
                    advanced = True
                    break
            if not advanced:
                color[current] = BLACK
                stack.pop()
    return errors


def _check_configs(graph: WorkflowGraph) -> list[GraphError]:
    errors = []

    def missing(node_id: str, key: str) -> None:
        errors.append(GraphError("missing_config", f"'{key}' is required", node_id))

    for node in graph.nodes:
        config = node.config
        if isinstance(config, TriggerConfig):
            try:
                TriggerEventType(config.trigger_type)
            except ValueError:
                errors.append(GraphError(
                    "invalid_trigger_type",
                    f"Unknown trigger type '{config.trigger_type}'",
                    node.id,
                ))
        elif isinstance(config, SendEmailConfig):
            if not config.template_id:
                missing(node.id, "template_id")
        elif isinstance(config, MoveStageConfig):
            if not config.stage_id:
                missing(node.id, "stage_id")
        elif isinstance(config, TagConfig):
            if not config.tag_id:
                missing(node.id, "tag_id")
        elif isinstance(config, WebhookConfig):
            if not config.endpoint_id:
                missing(node.id, "endpoint_id")
        elif isinstance(config, DelayConfig):
            if config.duration_minutes < 1:
                errors.append(GraphError("invalid_delay", "Delay must be at least one minute", node.id))
        elif isinstance(config, ConditionConfig):
            if not config.field:
                missing(node.id, "field")
            try:
                operator = ConditionOperator(config.operator)
            except ValueError:
                errors.append(GraphError(
                    "invalid_operator", f"Unknown operator '{config.operator}'", node.id
                ))
                continue
            needs_value = operator not in (ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY)
            if needs_value and (config.value is None or config.value == ""):
                missing(node.id, "value")
    return errors


# ─── Validator ──────────────────────────────────────────────────────────────


class GraphValidator:
    """Validates workflow graphs before they are published.

    Args:
        pipeline: Used to confirm stage and tag references
        messaging: Used to confirm template references
        webhooks: Used to confirm endpoint references
    """

    def __init__(
        self,
        pipeline: PipelineService,
        messaging: MessagingService,
        webhooks: WebhookDispatcher,
    ):
        self.pipeline = pipeline
        self.messaging = messaging
        self.webhooks = webhooks

    @staticmethod
    def validate_structure(graph_json: Any) -> ValidationResult:
        """Run every check that does not need a collaborator."""
        try:
            graph = graph_json if isinstance(graph_json, WorkflowGraph) else WorkflowGraph.from_json(graph_json)
        except GraphParseError as exc:
            return ValidationResult(
                ok=False,
                errors=[GraphError("invalid_graph", problem) for problem in exc.problems],
            )

        errors: list[GraphError] = []
        errors.extend(_check_trigger(graph))
        errors.extend(_check_reachability(graph))
        errors.extend(_check_edges(graph))
        errors.extend(_check_cycles(graph))
        errors.extend(_check_configs(graph))
        return ValidationResult(ok=not errors, errors=errors, graph=graph)

    async def validate(self, graph_json: Any, organization_id: str) -> ValidationResult:
        """Validate structure and, when that passes, every external reference.

        Args:
            graph_json: Graph JSON (or an already parsed WorkflowGraph)
            organization_id: Tenant whose entities the graph may reference

        Returns:
            ValidationResult with ``ok`` and the list of errors
        """
        result = self.validate_structure(graph_json)
        if not result.ok:
            return result

        errors = await self._check_references(result.graph, organization_id)
        if errors:
            logger.info(
                "graph_reference_errors",
                organization_id=organization_id,
                error_count=len(errors),
            )
        return ValidationResult(ok=not errors, errors=errors, graph=result.graph)

    async def _check_references(self, graph: WorkflowGraph, organization_id: str) -> list[GraphError]:
        errors: list[GraphError] = []

        async def check(node_id: str, kind: str, ref: str, lookup) -> None:
            try:
                exists = await lookup(organization_id, ref)
            except Exception as exc:
                logger.warning(
                    "reference_check_failed",
                    node_id=node_id,
                    kind=kind,
                    reference=ref,
                    error=str(exc),
                )
                errors.append(GraphError(
                    "reference_unverified", f"Could not verify {kind} '{ref}': {exc}", node_id
                ))
                return
            if not exists:
                errors.append(GraphError("unknown_reference", f"Unknown {kind} '{ref}'", node_id))

        for node in graph.nodes:
            config = node.config
            if isinstance(config, TriggerConfig):
                if config.to_stage_id:
                    await check(node.id, "stage", config.to_stage_id, self.pipeline.stage_exists)
                if config.tag_id:
                    await check(node.id, "tag", config.tag_id, self.pipeline.tag_exists)
            elif isinstance(config, MoveStageConfig):
                await check(node.id, "stage", config.stage_id, self.pipeline.stage_exists)
            elif isinstance(config, TagConfig):
                await check(node.id, "tag", config.tag_id, self.pipeline.tag_exists)
            elif isinstance(config, SendEmailConfig):
                await check(node.id, "template", config.template_id, self.messaging.template_exists)
            elif isinstance(config, WebhookConfig):
                await check(node.id, "webhook endpoint", config.endpoint_id, self.webhooks.endpoint_exists)
        return errors
