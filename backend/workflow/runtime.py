"""Wiring for the automation engine.

``build_runtime`` assembles the audit log, run store, dispatcher,
executor, trigger matcher, scheduler and validator around one session
factory and one set of collaborators. The API process and the Celery
worker each build their own runtime.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import structlog

from actions.base_action import ActionServices
from actions.registry import ActionDispatcher
from app.config import Settings, get_settings
from core.utils import utcnow_naive
from integrations.base import MessagingService, PipelineService, WebhookDispatcher
from triggers.base import TriggerEvent
from triggers.matcher import MatchResult, TriggerMatcher
from workflow.audit import RunAuditLog
from workflow.engine import RunExecutor
from workflow.retry_strategies import RetryStrategy
from workflow.run_store import RunStore
from workflow.scheduler import DelayScheduler
from workflow.validator import GraphValidator

logger = structlog.get_logger(__name__)


@dataclass
class AutomationRuntime:
    """Engine components sharing one database and one set of collaborators."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    pipeline: PipelineService
    messaging: MessagingService
    webhooks: WebhookDispatcher
    audit: RunAuditLog
    store: RunStore
    dispatcher: ActionDispatcher
    executor: RunExecutor
    matcher: TriggerMatcher
    scheduler: DelayScheduler
    validator: GraphValidator

    async def handle_event(self, event: TriggerEvent) -> MatchResult:
        """Entry point for CRM events from any source."""
        return await self.matcher.on_event(event)

    async def cancel_run(self, run_id: str) -> bool:
        """Cancel a run. An in-flight advance stops before its next node."""
        return await self.store.cancel(run_id)

    async def _route_follow_ups(self, events: list[TriggerEvent]) -> None:
        for event in events:
            logger.info(
                "follow_up_event",
                event_type=event.type.value,
                subject_id=event.subject_id,
                chain_depth=event.chain_depth,
            )
            await self.matcher.on_event(event)

    async def close(self) -> None:
        for client in (self.pipeline, self.messaging, self.webhooks):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    pipeline: Optional[PipelineService] = None,
    messaging: Optional[MessagingService] = None,
    webhooks: Optional[WebhookDispatcher] = None,
    settings: Optional[Settings] = None,
    clock: Callable = utcnow_naive,
    retry_strategy: Optional[RetryStrategy] = None,
    sleep: Callable = asyncio.sleep,
) -> AutomationRuntime:
    """Assemble a runtime.

    Collaborators that are not given are the HTTP clients configured in
    settings.
    """
    settings = settings or get_settings()
    if pipeline is None or messaging is None or webhooks is None:
        from integrations.http_clients import build_default_collaborators

        default_pipeline, default_messaging, default_webhooks = build_default_collaborators()
        pipeline = pipeline or default_pipeline
        messaging = messaging or default_messaging
        webhooks = webhooks or default_webhooks

    audit = RunAuditLog(session_factory)
    store = RunStore(session_factory)
    services = ActionServices(
        pipeline=pipeline,
        messaging=messaging,
        webhooks=webhooks,
        emit_events=settings.EMIT_CASCADE_EVENTS,
        webhook_timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
    )
    dispatcher = ActionDispatcher(services, audit, settings)
    executor = RunExecutor(
        store,
        audit,
        dispatcher,
        pipeline,
        retry_strategy=retry_strategy or RetryStrategy.from_settings(settings),
        clock=clock,
        sleep=sleep,
    )
    matcher = TriggerMatcher(
        session_factory,
        store,
        executor,
        max_chain_depth=settings.MAX_TRIGGER_CHAIN_DEPTH,
    )
    scheduler = DelayScheduler(
        store,
        executor,
        batch_size=settings.SCHEDULER_BATCH_SIZE,
        max_concurrency=settings.SCHEDULER_MAX_CONCURRENCY,
        stale_after_seconds=settings.RUN_STALE_AFTER_SECONDS,
        clock=clock,
    )
    runtime = AutomationRuntime(
        settings=settings,
        session_factory=session_factory,
        pipeline=pipeline,
        messaging=messaging,
        webhooks=webhooks,
        audit=audit,
        store=store,
        dispatcher=dispatcher,
        executor=executor,
        matcher=matcher,
        scheduler=scheduler,
        validator=GraphValidator(pipeline, messaging, webhooks),
    )
    executor.set_event_callback(runtime._route_follow_ups)
    return runtime


_runtime: Optional[AutomationRuntime] = None


def get_runtime() -> AutomationRuntime:
    """Process-wide runtime on the application's session factory."""
    global _runtime
    if _runtime is None:
        from db.database import AsyncSessionLocal

        _runtime = build_runtime(AsyncSessionLocal)
    return _runtime


async def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.close()
        _runtime = None
