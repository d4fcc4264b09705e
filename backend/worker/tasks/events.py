"""Celery task that feeds CRM events to the trigger matcher."""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.events.process_pipeline_event",
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    queue="events",
)
def process_pipeline_event(self, event_data: dict):
    """Match one CRM event against published workflows.

    Args:
        event_data: Event in its wire form (see ``TriggerEvent.to_dict``)

    Returns:
        Summary of the runs started for the event
    """
    from triggers.base import TriggerEvent

    event = TriggerEvent.from_dict(event_data)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_process(event))
    except Exception as exc:
        logger.error(f"[events] Processing event {event.event_id} failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _process(event) -> dict:
    from db.worker_session import worker_session_factory
    from workflow.runtime import build_runtime

    async with worker_session_factory() as session_factory:
        runtime = build_runtime(session_factory)
        try:
            result = await runtime.handle_event(event)
        finally:
            await runtime.close()

    return {
        "event_id": result.event_id,
        "matched": result.matched,
        "started": [run.id for run in result.runs],
        "deduplicated": result.deduplicated,
        "ignored_reason": result.ignored_reason,
    }
