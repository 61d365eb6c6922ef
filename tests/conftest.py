import os
from collections.abc import AsyncGenerator
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.config.settings import AuthMode, Settings, settings as app_settings
from api.infra.database import Base, get_session
from api.main import create_app

# Import models to ensure they're registered
from api.v1.infra.jobs import models  # noqa: F401

ORG_A = UUID("11111111-1111-1111-1111-111111111111")
ORG_B = UUID("22222222-2222-2222-2222-222222222222")
SERVICE_TOKEN = "test-service-token"


def uses_postgres() -> bool:
    database_url = os.getenv("DATABASE_URL")
    return bool(database_url and "postgresql" in database_url)


@pytest.fixture
async def test_engine(tmp_path):
    """Create a test database engine with a fresh schema."""
    if uses_postgres():
        # Use the CI PostgreSQL database
        engine = create_async_engine(os.environ["DATABASE_URL"], echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    else:
        # File-backed so separate sessions get separate connections
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}", echo=False
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    """Queue settings with deterministic backoff."""
    return Settings(
        job_backoff_base_s=60.0,
        job_max_backoff_s=3600.0,
        job_backoff_jitter=0.0,
        job_claim_timeout_s=300,
        job_max_attempts=10,
    )


@pytest.fixture
def app(db_session, monkeypatch):
    """Create a test FastAPI application with test database and dev auth."""
    monkeypatch.setattr(app_settings, "auth_mode", AuthMode.DEV)
    monkeypatch.setattr(app_settings, "service_token", SERVICE_TOKEN)
    monkeypatch.setattr(app_settings, "job_backoff_jitter", 0.0)

    app = create_app()

    # Override the database dependency
    app.dependency_overrides[get_session] = lambda: db_session

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    """Org admin of ORG_A."""
    return {"X-User-ID": "alice", "X-Org-ID": str(ORG_A), "X-Role": "admin"}


@pytest.fixture
def member_headers():
    """Plain member of ORG_A."""
    return {"X-User-ID": "bob", "X-Org-ID": str(ORG_A), "X-Role": "member"}


@pytest.fixture
def other_org_admin_headers():
    """Org admin of ORG_B."""
    return {"X-User-ID": "carol", "X-Org-ID": str(ORG_B), "X-Role": "admin"}


@pytest.fixture
def service_headers():
    """Workers and external dispatchers."""
    return {"X-Service-Token": SERVICE_TOKEN}
