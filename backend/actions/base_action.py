"""
Base action interface for workflow action nodes.

Every action node type (move stage, add tag, send email, ...) inherits
from BaseAction and implements execute(). Actions talk to the CRM only
through the collaborator interfaces they are constructed with.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from integrations.base import MessagingService, PipelineService, Subject, WebhookDispatcher
from workflow.retry_strategies import is_transient_error

logger = structlog.get_logger(__name__)


class ActionResult:
    """Standardized result from an action attempt.

    Args:
        ok: The side effect happened (or was already in place)
        retryable: For failures, whether another attempt may succeed
        error: Failure reason
        output: Small JSON-serialisable detail stored in the audit trail
        skipped: The call was not made because an earlier attempt of the
            same node already succeeded
        emitted_events: Follow-up CRM events caused by this action
    """

    def __init__(
        self,
        ok: bool,
        retryable: bool = False,
        error: Optional[str] = None,
        output: Optional[dict[str, Any]] = None,
        skipped: bool = False,
        emitted_events: Optional[list] = None,
        duration_ms: float = 0,
    ):
        self.ok = ok
        self.retryable = retryable
        self.error = error
        self.output = output or {}
        self.skipped = skipped
        self.emitted_events = emitted_events or []
        self.duration_ms = duration_ms

    @classmethod
    def success(cls, **output: Any) -> "ActionResult":
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, error: str, retryable: bool = False) -> "ActionResult":
        return cls(ok=False, retryable=retryable, error=error)


@dataclass
class ActionContext:
    """Everything a handler needs for one attempt."""

    organization_id: str
    subject_id: str
    config: Any
    run_id: str
    node_id: str
    attempt: int
    subject: Subject
    trigger_event: dict[str, Any] = field(default_factory=dict)
    chain_depth: int = 0

    @property
    def idempotency_key(self) -> str:
        """Stable across attempts of the same node in the same run."""
        return f"{self.run_id}:{self.node_id}"


@dataclass
class ActionServices:
    pipeline: PipelineService
    messaging: MessagingService
    webhooks: WebhookDispatcher
    emit_events: bool = True
    webhook_timeout: float = 10.0


class BaseAction(ABC):
    """
    Abstract base class for all action implementations.

    Subclasses must implement:
    - execute(ctx) -> ActionResult
    - action_type (class property)

    ``idempotent`` actions can safely run twice (set semantics). Actions
    that are not get de-duplicated by the dispatcher against the audit
    trail before every call.
    """

    action_type: str = "base"
    idempotent: bool = True

    def __init__(self, services: ActionServices):
        self.services = services

    @abstractmethod
    async def execute(self, ctx: ActionContext) -> ActionResult:
        """
        Perform the side effect for one attempt.

        Args:
            ctx: Attempt context (tenant, subject, typed node config)

        Returns:
            ActionResult describing the outcome
        """
        pass

    async def run(self, ctx: ActionContext) -> ActionResult:
        """
        Run the action with timing and error classification.

        This is the entry point called by the dispatcher. Exceptions from
        execute() become failed results; collaborator errors and network
        timeouts keep their retryable classification.
        """
        start = time.monotonic()
        try:
            result = await self.execute(ctx)
        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            retryable = is_transient_error(e)
            logger.warning(
                "Action failed",
                action_type=self.action_type,
                run_id=ctx.run_id,
                node_id=ctx.node_id,
                attempt=ctx.attempt,
                retryable=retryable,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            return ActionResult(ok=False, retryable=retryable, error=str(e) or type(e).__name__, duration_ms=duration_ms)

        result.duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            "Action completed",
            action_type=self.action_type,
            run_id=ctx.run_id,
            node_id=ctx.node_id,
            attempt=ctx.attempt,
            ok=result.ok,
            duration_ms=round(result.duration_ms, 2),
        )
        return result

    def timeout(self, settings) -> float:
        """Upper bound on one attempt, in seconds."""
        return settings.ACTION_TIMEOUT_SECONDS
