from typing import AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.main import app
from app.api.deps import (
    badge_service_dependency,
    cache_dependency,
    repository_service_dependency,
)
from app.core.auth import create_test_token
from app.db.base import Base
from app.db.session import get_db
from app.services.badge_service import BadgeService
from app.services.cache import DualTierCache
from app.services.orchestrator import AnalysisOrchestrator
from app.services.repository_service import RepositoryService

# Use in-memory SQLite for fast integration tests
DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean database session for each test by recreating tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    # Drop all tables after each test to ensure isolation
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def cache() -> DualTierCache:
    # no REDIS_URL: in-process tier only
    return DualTierCache()


@pytest.fixture
def orchestrator(cache, fake_producer) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(TestingSessionLocal, fake_producer, cache)


@pytest.fixture
def repository_service(cache, fake_github, orchestrator) -> RepositoryService:
    return RepositoryService(fake_github, orchestrator, cache)


@pytest.fixture
def badge_service(cache, orchestrator) -> BadgeService:
    return BadgeService(orchestrator, cache)


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    cache: DualTierCache,
    repository_service: RepositoryService,
    badge_service: BadgeService,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an AsyncClient for the FastAPI app with DB and service overrides."""

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[cache_dependency] = lambda: cache
    app.dependency_overrides[repository_service_dependency] = lambda: repository_service
    app.dependency_overrides[badge_service_dependency] = lambda: badge_service

    # Use ASGITransport for testing FastAPI apps
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    """Bearer token signed with the test AUTH_SECRET."""
    return {"Authorization": f"Bearer {create_test_token('user-1')}"}


@pytest.fixture
def premium_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_test_token('user-premium', plan='premium')}"}


@pytest.fixture
def add_repository(client: AsyncClient):
    """POST /api/repositories; extra keyword arguments go into the body."""

    async def add(url: str = "https://github.com/octocat/hello-world", **body):
        return await client.post("/api/repositories", json={"repoUrl": url, **body})

    return add
