"""Worker-safe database sessions for Celery tasks.

Creates a fresh async engine per task to avoid the 'Future attached
to a different loop' error when asyncpg connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager

from db.database import create_db_engine, create_session_factory


@asynccontextmanager
async def worker_session_factory():
    """Provide a session factory bound to a task-local engine.

    Usage:
        async with worker_session_factory() as session_factory:
            runtime = build_runtime(session_factory)
            ...
    """
    engine = create_db_engine()
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()
