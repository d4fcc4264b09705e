"""SQLAlchemy async database setup and engine configuration."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings

settings = get_settings()


def create_db_engine(url: str | None = None) -> AsyncEngine:
    """Create and configure async SQLAlchemy engine.

    Args:
        url: Database URL, defaults to ``DATABASE_URL`` from settings.

    Returns:
        Async SQLAlchemy engine instance.
    """
    url = url or settings.DATABASE_URL
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO)
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async session factory.

    Objects stay usable after commit; the engine passes detached rows
    between short transactions.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Global engine and session factory instances
engine = create_db_engine()
AsyncSessionLocal = create_session_factory(engine)


async def create_tables(bind: AsyncEngine) -> None:
    """Create every registered table on ``bind``."""
    from db.base import Base
    import db.models  # noqa: F401  registers the models

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Initialize database tables.

    This should be called once at application startup.
    """
    await create_tables(engine)


async def close_db():
    """Close database connections.

    This should be called at application shutdown.
    """
    await engine.dispose()
