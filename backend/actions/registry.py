"""
Action registry and dispatcher.

The registry maps node types to BaseAction implementations. The
dispatcher runs one attempt of one action node: it de-duplicates
non-idempotent actions against the audit trail, bounds the attempt with
a timeout and turns every outcome into an ActionResult.
"""

import asyncio
from typing import Dict, Optional, Type

import structlog

from actions.base_action import ActionContext, ActionResult, ActionServices, BaseAction
from actions.implementations.email_action import EMAIL_ACTION_TYPES
from actions.implementations.pipeline_actions import PIPELINE_ACTION_TYPES
from actions.implementations.webhook_action import WEBHOOK_ACTION_TYPES
from integrations.base import Subject
from workflow.audit import RunAuditLog
from workflow.graph import Node

logger = structlog.get_logger(__name__)


class ActionRegistry:
    """Central registry for all action implementations."""

    def __init__(self):
        self._actions: Dict[str, Type[BaseAction]] = {}
        self._register_builtin_actions()

    def _register_builtin_actions(self):
        for group in (PIPELINE_ACTION_TYPES, EMAIL_ACTION_TYPES, WEBHOOK_ACTION_TYPES):
            for action_type, action_class in group.items():
                self.register(action_type, action_class)

    def register(self, action_type: str, action_class: Type[BaseAction]):
        """Register a new action type."""
        self._actions[action_type] = action_class

    def get(self, action_type: str) -> Optional[Type[BaseAction]]:
        """Get an action class by type string."""
        return self._actions.get(action_type)

    @property
    def available_types(self) -> list:
        return list(self._actions.keys())


# Singleton
_registry: Optional[ActionRegistry] = None


def get_action_registry() -> ActionRegistry:
    """Get or create the singleton action registry."""
    global _registry
    if _registry is None:
        _registry = ActionRegistry()
    return _registry


class ActionDispatcher:
    """Executes single attempts of action nodes.

    Args:
        services: Collaborators handed to every action
        audit: Audit trail used for de-duplication
        settings: Provides the per-attempt timeouts
        registry: Action implementations, defaults to the singleton
    """

    def __init__(
        self,
        services: ActionServices,
        audit: RunAuditLog,
        settings,
        registry: Optional[ActionRegistry] = None,
    ):
        self.services = services
        self.audit = audit
        self.settings = settings
        self.registry = registry or get_action_registry()
        self._instances: Dict[str, BaseAction] = {}

    def _handler(self, action_type: str) -> Optional[BaseAction]:
        if action_type not in self._instances:
            action_class = self.registry.get(action_type)
            if action_class is None:
                return None
            self._instances[action_type] = action_class(self.services)
        return self._instances[action_type]

    async def dispatch(self, run, node: Node, subject: Subject, attempt: int) -> ActionResult:
        """Run one attempt of ``node`` for ``run``.

        Args:
            run: The RunInstance being advanced
            node: Action node to execute
            subject: Contact state fetched for this attempt
            attempt: Attempt number (1-based)

        Returns:
            ActionResult; never raises for handler failures
        """
        handler = self._handler(node.type.value)
        if handler is None:
            return ActionResult.failure(f"No action registered for node type '{node.type.value}'")

        if not handler.idempotent and await self.audit.has_success(run.id, node.id):
            logger.info(
                "Action already delivered, skipping",
                action_type=handler.action_type,
                run_id=run.id,
                node_id=node.id,
                attempt=attempt,
            )
            return ActionResult(ok=True, skipped=True, output={"reason": "already_succeeded"})

        ctx = ActionContext(
            organization_id=run.organization_id,
            subject_id=run.subject_id,
            config=node.config,
            run_id=run.id,
            node_id=node.id,
            attempt=attempt,
            subject=subject,
            trigger_event=run.trigger_event or {},
            chain_depth=run.chain_depth,
        )
        timeout = handler.timeout(self.settings)
        try:
            return await asyncio.wait_for(handler.run(ctx), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Action timed out",
                action_type=handler.action_type,
                run_id=run.id,
                node_id=node.id,
                attempt=attempt,
                timeout=timeout,
            )
            return ActionResult.failure(f"{handler.action_type} timed out after {timeout}s", retryable=True)
