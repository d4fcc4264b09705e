"""CRM Automation Engine - FastAPI application.

Besides serving the API, the process runs the delay scheduler sweep and,
when ``EVENT_BUS_ENABLED`` is set, the Redis subscriber that feeds CRM
events into the trigger matcher.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, get_settings
from api.v1.router import api_v1_router
from api.routes import health
from db.database import close_db, init_db
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from triggers.handlers.event_bus import RedisEventSource
from workflow.runtime import AutomationRuntime, get_runtime, shutdown_runtime

logger = logging.getLogger(__name__)


async def _start_scheduler(runtime: AutomationRuntime, settings: Settings, stack: AsyncExitStack) -> None:
    stop = asyncio.Event()
    task = asyncio.create_task(
        runtime.scheduler.run_forever(settings.SCHEDULER_SWEEP_INTERVAL_SECONDS, stop)
    )

    async def _stop():
        stop.set()
        await task

    stack.push_async_callback(_stop)
    logger.info(f"[startup] Delay scheduler sweeping every {settings.SCHEDULER_SWEEP_INTERVAL_SECONDS}s")


async def _start_event_bus(runtime: AutomationRuntime, settings: Settings, stack: AsyncExitStack) -> None:
    source = RedisEventSource(settings.REDIS_URL, settings.EVENT_CHANNEL)
    source.set_callback(runtime.handle_event)
    await source.start()
    stack.push_async_callback(source.stop)
    logger.info(f"[startup] Listening for CRM events on {settings.EVENT_CHANNEL}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging()
    try:
        settings.validate_secrets()
    except RuntimeError as e:
        logger.critical(f"[startup] {e}")
        raise

    await init_db()
    runtime = get_runtime()

    async with AsyncExitStack() as stack:
        stack.push_async_callback(close_db)
        stack.push_async_callback(shutdown_runtime)
        # Runs that came due while the process was down are picked up by the first sweep
        if settings.SCHEDULER_ENABLED:
            await _start_scheduler(runtime, settings, stack)
        if settings.EVENT_BUS_ENABLED:
            await _start_event_bus(runtime, settings, stack)

        logger.info(f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT})")
        yield
        logger.info("[shutdown] Stopping background work")
    logger.info("[shutdown] Application shut down")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Runs CRM automation workflows: triggers, conditions, delays and actions.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestTrackingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
    setup_exception_handlers(app)

    # Unversioned health probes for load balancers
    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
