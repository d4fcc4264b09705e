"""Celery task that resumes due workflow runs.

Runs on Celery Beat every ``SCHEDULER_SWEEP_INTERVAL_SECONDS``. Several
workers may pick the task up at once; run claims are atomic, so each
due run is resumed by exactly one of them.
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.scheduler.sweep_due_runs",
    bind=True,
    max_retries=2,
    default_retry_delay=15,
    queue="scheduler",
)
def sweep_due_runs(self):
    """Claim and resume every suspended run whose delay has elapsed."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_sweep())
        if result["due"] or result["recovered"]:
            logger.info(f"[scheduler] Sweep done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[scheduler] Sweep failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _sweep() -> dict:
    from db.worker_session import worker_session_factory
    from workflow.runtime import build_runtime

    async with worker_session_factory() as session_factory:
        runtime = build_runtime(session_factory)
        try:
            report = await runtime.scheduler.sweep()
        finally:
            await runtime.close()
    return report.to_dict()
