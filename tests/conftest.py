"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing kubetally.db
# This prevents the module from trying to create the data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
# The API tests must not talk to a cluster
os.environ["KUBETALLY_COLLECTOR_ENABLED"] = "false"

from kubetally.db import Base  # noqa: E402
from kubetally.models import *  # noqa: E402,F401,F403  register all tables


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
async def db(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session with automatic rollback."""
    async_session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(db):
    """Stand-in for AsyncSessionLocal that hands out the test session.

    Services that open their own sessions (scrapers, reconcilers) take this
    as their ``session_factory`` so they write into the test database.
    """

    class MockAsyncSessionLocal:
        """Mock async context manager for database sessions."""

        def __call__(self):
            return self

        async def __aenter__(self):
            return db

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            # Don't close the session - let the test fixture manage it
            return False

    return MockAsyncSessionLocal()


@pytest.fixture
async def app():
    """Create FastAPI app for testing."""
    from kubetally.main import app as application
    return application


@pytest.fixture
async def client(app, db):
    """Create async test client backed by the test database."""
    from httpx import ASGITransport, AsyncClient

    from kubetally.db import get_db

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test", follow_redirects=True
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def _pod(
    name: str,
    uid: str,
    namespace: str = "default",
    node: str = "node-1",
    cpu: str = "500m",
    memory: str = "256Mi",
    labels: dict | None = None,
    owner: tuple[str, str] | None = ("ReplicaSet", "web-7d4b9"),
    resource_version: str = "1",
    owner_uid: str | None = None,
) -> dict:
    """Build a pod object as returned by the API server."""
    metadata = {
        "name": name,
        "namespace": namespace,
        "uid": uid,
        "resourceVersion": resource_version,
        "labels": labels or {},
        "creationTimestamp": "2024-05-01T10:00:00Z",
    }
    if owner:
        metadata["ownerReferences"] = [
            {"kind": owner[0], "name": owner[1], "uid": owner_uid or f"{uid}-owner", "controller": True}
        ]
    return {
        "metadata": metadata,
        "spec": {
            "nodeName": node,
            "containers": [
                {"name": "app", "resources": {"requests": {"cpu": cpu, "memory": memory}}}
            ],
        },
        "status": {"phase": "Running", "startTime": "2024-05-01T10:00:05Z"},
    }


def _node(name: str, uid: str, resource_version: str = "1") -> dict:
    return {
        "metadata": {"name": name, "uid": uid, "resourceVersion": resource_version},
        "spec": {},
        "status": {"capacity": {"cpu": "4", "memory": "16Gi"}},
    }


@pytest.fixture
def make_pod():
    """Factory fixture for pod objects.

    Usage:
        pod = make_pod("web-1", "uid-1", labels={"app": "web"})
    """
    return _pod


@pytest.fixture
def make_node():
    """Factory fixture for node objects."""
    return _node
