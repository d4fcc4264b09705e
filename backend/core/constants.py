"""Constants and enums for the CRM automation engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition version."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class RunState(str, Enum):
    """State of a single workflow run for one subject."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATES


TERMINAL_RUN_STATES = frozenset({RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED})
ACTIVE_RUN_STATES = frozenset({RunState.RUNNING, RunState.SUSPENDED})


class NodeType(str, Enum):
    """Node types a workflow graph may contain."""

    TRIGGER = "trigger"
    SEND_EMAIL = "send_email"
    MOVE_STAGE = "move_stage"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    WEBHOOK = "webhook"
    DELAY = "delay"
    CONDITION = "condition"


ACTION_NODE_TYPES = frozenset({
    NodeType.SEND_EMAIL,
    NodeType.MOVE_STAGE,
    NodeType.ADD_TAG,
    NodeType.REMOVE_TAG,
    NodeType.WEBHOOK,
})


class TriggerEventType(str, Enum):
    """CRM events that can start a workflow."""

    STAGE_CHANGED = "stage_changed"
    CONTACT_CREATED = "contact_created"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"


class EdgeHandle(str, Enum):
    """Outgoing edge handles."""

    DEFAULT = "default"
    TRUE = "true"
    FALSE = "false"


class ConditionOperator(str, Enum):
    """Operators supported by condition nodes."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class NodeOutcome(str, Enum):
    """Outcome of one node execution attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# Builder shows this duration on a new delay node but only saves it once edited
DEFAULT_DELAY_MINUTES = 60
