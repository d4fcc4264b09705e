"""FastAPI dependency injection functions."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db.database import AsyncSessionLocal
from workflow.runtime import AutomationRuntime, get_runtime

logger = logging.getLogger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise
        finally:
            await session.close()


def get_automation_runtime() -> AutomationRuntime:
    """The engine components shared by every request."""
    return get_runtime()
