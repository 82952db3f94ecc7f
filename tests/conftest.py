from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from jobledger.config.settings import Settings, get_settings
from jobledger.infra.database import Base, get_session
from jobledger.main import create_app
from jobledger.v1.embeddings.client import EmbeddingWorkerClient

# Import models to ensure they're registered
from jobledger.v1.embeddings import models as embedding_models  # noqa: F401
from jobledger.v1.runs import models as run_models  # noqa: F401

WORKER_TOKEN = "test-worker-token"


@pytest.fixture
def database_url(tmp_path) -> str:
    """Isolated SQLite file database per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
async def test_engine(database_url):
    """Create a test database engine with all tables."""
    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory for tests that need several independent sessions."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings(database_url) -> Settings:
    """Settings pointing at the test database and the in-process worker."""
    return Settings(
        database_url=database_url,
        debug=False,
        worker_base_url="http://testserver/v1/embeddings",
        worker_token=WORKER_TOKEN,
        vectorizer="stub",
        drain_batch_size=10,
    )


@pytest.fixture
def app(session_factory, test_settings):
    """Worker app wired to the test database."""
    app = create_app()

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {WORKER_TOKEN}"}


@pytest.fixture
async def worker_client(async_client, test_settings) -> AsyncGenerator[EmbeddingWorkerClient, None]:
    """Producer-side client talking to the in-process worker app."""
    async with EmbeddingWorkerClient(test_settings, http_client=async_client) as client:
        yield client
