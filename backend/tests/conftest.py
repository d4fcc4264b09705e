"""Shared pytest fixtures for the CRM Automation Engine test suite.

Provides:
- File-backed async SQLite database per test (a "restart" disposes the
  engine and opens a new one on the same file)
- In-memory Pipeline / Messaging / Webhook collaborators
- A fully wired AutomationRuntime with a hand-driven clock
- FastAPI test client (httpx.AsyncClient) with a JWT for ORG_ID
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("EVENT_BUS_ENABLED", "false")

from app.config import get_settings  # noqa: E402
from core.security import create_access_token  # noqa: E402
from db.database import create_db_engine, create_session_factory, create_tables  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402
from workflow.retry_strategies import RetryStrategy  # noqa: E402
from workflow.runtime import build_runtime  # noqa: E402

from factories import (  # noqa: E402
    ORG_ID,
    FakeClock,
    FakeMessagingService,
    FakePipelineService,
    FakeWebhookDispatcher,
)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'automation.db'}"


@pytest_asyncio.fixture
async def db_engine(db_url):
    """Engine on a fresh database file with every table created."""
    engine = create_db_engine(db_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.commit()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def pipeline() -> FakePipelineService:
    return FakePipelineService()


@pytest.fixture
def messaging() -> FakeMessagingService:
    return FakeMessagingService()


@pytest.fixture
def webhooks() -> FakeWebhookDispatcher:
    return FakeWebhookDispatcher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry_strategy() -> RetryStrategy:
    """Production attempt budget without the waiting."""
    return RetryStrategy.exponential(max_attempts=5, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def make_runtime(pipeline, messaging, webhooks, clock, retry_strategy):
    """Build a runtime on any session factory (used to simulate restarts)."""

    def _make(factory, **overrides):
        kwargs = dict(
            pipeline=pipeline,
            messaging=messaging,
            webhooks=webhooks,
            settings=get_settings(),
            clock=clock,
            retry_strategy=retry_strategy,
        )
        kwargs.update(overrides)
        return build_runtime(factory, **kwargs)

    return _make


@pytest.fixture
def runtime(make_runtime, session_factory):
    return make_runtime(session_factory)


@pytest.fixture
def publish(session_factory, runtime):
    """Create and publish a workflow from graph JSON; returns the definition."""

    async def _publish(graph_json: dict, name: str = "Test workflow", organization_id: str = ORG_ID):
        async with session_factory() as session:
            svc = WorkflowService(session)
            draft = await svc.create_workflow(organization_id, name, graph=graph_json, created_by_id="user-1")
            definition = await svc.publish(draft.workflow_id, organization_id, runtime.validator)
            await session.commit()
            return definition

    return _publish


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(session_factory, runtime):
    """FastAPI app wired to the test database and runtime."""
    from app.dependencies import get_automation_runtime, get_db
    from app.main import create_app

    test_app = create_app()

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = _get_db
    test_app.dependency_overrides[get_automation_runtime] = lambda: runtime
    yield test_app
    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


@pytest.fixture
def auth_headers() -> dict:
    """Authorization headers with a valid JWT for ORG_ID."""
    token = create_access_token(user_id="user-1", email="ops@example.com", org_id=ORG_ID)
    return {"Authorization": f"Bearer {token}"}
