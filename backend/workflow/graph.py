"""
Workflow graph model.

Parses the builder's Graph JSON into an immutable, arena-style graph:
nodes live in a tuple and edges refer to them by index, so the graph can
be shared read-only between every run executing the same definition.

Each node type has its own frozen config dataclass. Parsing is lenient
about *missing* config values (a draft may be half-filled; the validator
reports those) but strict about *shape*: unknown node types, duplicate
ids, dangling edges and values of the wrong type raise GraphParseError.

Graph JSON::

    {
      "nodes": [
        {"id": "t1", "type": "trigger",
         "data": {"triggerType": "stage_changed", "config": {"to_stage_id": "s-qual"}}},
        {"id": "d1", "type": "delay", "data": {"config": {"duration_minutes": 1440}}}
      ],
      "edges": [{"source": "t1", "target": "d1", "sourceHandle": null}]
    }
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from core.constants import ACTION_NODE_TYPES, DEFAULT_DELAY_MINUTES, EdgeHandle, NodeType
from core.exceptions import GraphParseError
from core.utils import config_value


# ─── Node configs ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TriggerConfig:
    trigger_type: str = ""
    to_stage_id: Optional[str] = None
    tag_id: Optional[str] = None

    def filters(self) -> dict[str, str]:
        """Filter values that must match the event payload."""
        return {
            key: value
            for key, value in (("to_stage_id", self.to_stage_id), ("tag_id", self.tag_id))
            if value
        }


@dataclass(frozen=True)
class SendEmailConfig:
    template_id: str = ""
    from_name: Optional[str] = None


@dataclass(frozen=True)
class MoveStageConfig:
    stage_id: str = ""


@dataclass(frozen=True)
class TagConfig:
    tag_id: str = ""


@dataclass(frozen=True)
class WebhookConfig:
    endpoint_id: str = ""


@dataclass(frozen=True)
class DelayConfig:
    duration_minutes: int = DEFAULT_DELAY_MINUTES


@dataclass(frozen=True)
class ConditionConfig:
    field: str = ""
    operator: str = ""
    value: Any = None


NodeConfig = Union[
    TriggerConfig,
    SendEmailConfig,
    MoveStageConfig,
    TagConfig,
    WebhookConfig,
    DelayConfig,
    ConditionConfig,
]


def _optional_str(raw: dict, key: str, node_id: str) -> Optional[str]:
    value = config_value(raw, key)
    if value is None or value == "":
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise GraphParseError([f"node '{node_id}': '{key}' must be a string"])
    return str(value)


def _required_str(raw: dict, key: str, node_id: str) -> str:
    return _optional_str(raw, key, node_id) or ""


def _parse_duration(raw: dict, node_id: str) -> int:
    value = config_value(raw, "duration_minutes")
    if value is None or value == "":
        return DEFAULT_DELAY_MINUTES
    if isinstance(value, bool):
        raise GraphParseError([f"node '{node_id}': 'duration_minutes' must be an integer"])
    if isinstance(value, float):
        if not value.is_integer():
            raise GraphParseError([f"node '{node_id}': 'duration_minutes' must be a whole number"])
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise GraphParseError([f"node '{node_id}': 'duration_minutes' must be an integer"])


def parse_config(node_type: NodeType, data: dict, node_id: str) -> NodeConfig:
    """Build the typed config for ``node_type`` from a node's ``data`` block.

    Args:
        node_type: Parsed node type
        data: The node's ``data`` object (holds ``config`` and, for
            triggers, ``triggerType``)
        node_id: Used in error messages

    Returns:
        The config dataclass for the node type

    Raises:
        GraphParseError: If a value has the wrong type
    """
    raw = data.get("config") or {}
    if not isinstance(raw, dict):
        raise GraphParseError([f"node '{node_id}': config must be an object"])

    if node_type == NodeType.TRIGGER:
        trigger_type = data.get("triggerType") or config_value(raw, "trigger_type") or ""
        return TriggerConfig(
            trigger_type=str(trigger_type),
            to_stage_id=_optional_str(raw, "to_stage_id", node_id),
            tag_id=_optional_str(raw, "tag_id", node_id),
        )
    if node_type == NodeType.SEND_EMAIL:
        return SendEmailConfig(
            template_id=_required_str(raw, "template_id", node_id),
            from_name=_optional_str(raw, "from_name", node_id),
        )
    if node_type == NodeType.MOVE_STAGE:
        return MoveStageConfig(stage_id=_required_str(raw, "stage_id", node_id))
    if node_type in (NodeType.ADD_TAG, NodeType.REMOVE_TAG):
        return TagConfig(tag_id=_required_str(raw, "tag_id", node_id))
    if node_type == NodeType.WEBHOOK:
        return WebhookConfig(endpoint_id=_required_str(raw, "endpoint_id", node_id))
    if node_type == NodeType.DELAY:
        return DelayConfig(duration_minutes=_parse_duration(raw, node_id))
    if node_type == NodeType.CONDITION:
        return ConditionConfig(
            field=_required_str(raw, "field", node_id),
            operator=_required_str(raw, "operator", node_id),
            value=config_value(raw, "value"),
        )
    raise GraphParseError([f"node '{node_id}': unsupported type '{node_type}'"])


# ─── Graph ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Node:
    """A single node of a workflow graph."""

    id: str
    type: NodeType
    config: NodeConfig
    label: str = ""

    @property
    def is_action(self) -> bool:
        return self.type in ACTION_NODE_TYPES


@dataclass(frozen=True)
class Edge:
    """Directed edge between two node indexes."""

    source: int
    target: int
    handle: EdgeHandle = EdgeHandle.DEFAULT


@dataclass(frozen=True)
class WorkflowGraph:
    """Immutable graph of nodes and index-based edges.

    Build with :meth:`from_json`; the adjacency tables are derived once
    at construction.
    """

    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    _index: dict[str, int] = field(default_factory=dict, repr=False, compare=False)
    _outgoing: tuple[tuple[Edge, ...], ...] = field(default=(), repr=False, compare=False)
    _incoming: tuple[tuple[Edge, ...], ...] = field(default=(), repr=False, compare=False)

    @classmethod
    def build(cls, nodes: tuple[Node, ...], edges: tuple[Edge, ...]) -> "WorkflowGraph":
        index = {node.id: i for i, node in enumerate(nodes)}
        outgoing: list[list[Edge]] = [[] for _ in nodes]
        incoming: list[list[Edge]] = [[] for _ in nodes]
        for edge in edges:
            outgoing[edge.source].append(edge)
            incoming[edge.target].append(edge)
        return cls(
            nodes=nodes,
            edges=edges,
            _index=index,
            _outgoing=tuple(tuple(e) for e in outgoing),
            _incoming=tuple(tuple(e) for e in incoming),
        )

    @classmethod
    def from_json(cls, data: Any) -> "WorkflowGraph":
        """Parse builder Graph JSON.

        Raises:
            GraphParseError: Listing every shape problem found
        """
        if not isinstance(data, dict):
            raise GraphParseError(["graph must be an object with 'nodes' and 'edges'"])

        raw_nodes = data.get("nodes") or []
        raw_edges = data.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise GraphParseError(["'nodes' and 'edges' must be lists"])

        problems: list[str] = []
        nodes: list[Node] = []
        seen: set[str] = set()

        for position, raw in enumerate(raw_nodes):
            if not isinstance(raw, dict) or not raw.get("id"):
                problems.append(f"node #{position} has no id")
                continue
            node_id = str(raw["id"])
            if node_id in seen:
                problems.append(f"duplicate node id '{node_id}'")
                continue
            seen.add(node_id)

            try:
                node_type = NodeType(raw.get("type"))
            except ValueError:
                problems.append(f"node '{node_id}': unknown type '{raw.get('type')}'")
                continue

            data_block = raw.get("data") or {}
            if not isinstance(data_block, dict):
                problems.append(f"node '{node_id}': data must be an object")
                continue
            try:
                config = parse_config(node_type, data_block, node_id)
            except GraphParseError as exc:
                problems.extend(exc.problems)
                continue
            nodes.append(Node(id=node_id, type=node_type, config=config, label=str(data_block.get("label") or "")))

        index = {node.id: i for i, node in enumerate(nodes)}
        edges: list[Edge] = []
        for position, raw in enumerate(raw_edges):
            if not isinstance(raw, dict):
                problems.append(f"edge #{position} must be an object")
                continue
            source, target = str(raw.get("source") or ""), str(raw.get("target") or "")
            if source not in index:
                if source not in seen:
                    problems.append(f"edge #{position}: unknown source '{source}'")
                continue
            if target not in index:
                if target not in seen:
                    problems.append(f"edge #{position}: unknown target '{target}'")
                continue
            try:
                handle = EdgeHandle(raw.get("sourceHandle") or EdgeHandle.DEFAULT.value)
            except ValueError:
                problems.append(f"edge #{position}: unknown handle '{raw.get('sourceHandle')}'")
                continue
            edges.append(Edge(source=index[source], target=index[target], handle=handle))

        if problems:
            raise GraphParseError(problems)
        return cls.build(tuple(nodes), tuple(edges))

    # ─── Lookups ────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self.nodes)

    def index_of(self, node_id: str) -> Optional[int]:
        return self._index.get(node_id)

    def get(self, node_id: str) -> Optional[Node]:
        i = self._index.get(node_id)
        return self.nodes[i] if i is not None else None

    def outgoing(self, node_id: str) -> tuple[Edge, ...]:
        i = self._index.get(node_id)
        return self._outgoing[i] if i is not None else ()

    def incoming(self, node_id: str) -> tuple[Edge, ...]:
        i = self._index.get(node_id)
        return self._incoming[i] if i is not None else ()

    def successors(self, index: int) -> list[int]:
        return [edge.target for edge in self._outgoing[index]]

    def next_node_id(self, node_id: str, handle: EdgeHandle = EdgeHandle.DEFAULT) -> Optional[str]:
        """Target of the first outgoing edge with ``handle``, or None."""
        for edge in self.outgoing(node_id):
            if edge.handle == handle:
                return self.nodes[edge.target].id
        return None

    def trigger_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.type == NodeType.TRIGGER]

    @property
    def trigger(self) -> Optional[Node]:
        """The single trigger node, when there is exactly one."""
        triggers = self.trigger_nodes()
        return triggers[0] if len(triggers) == 1 else None
