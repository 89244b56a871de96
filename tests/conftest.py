"""Test fixtures — create/drop tables for each async test."""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_hookrelay.db"

from hookrelay.database import Base, async_session, engine  # noqa: E402
from hookrelay.main import app  # noqa: E402
from hookrelay.services import url_safety  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _no_dns(monkeypatch):
    """Receiver hostnames resolve to nothing unless a test says otherwise."""
    monkeypatch.setattr(url_safety, "resolve_host", lambda host: [])


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def endpoint(db):
    from hookrelay.services.endpoint_registry import EndpointRegistry

    return await EndpointRegistry(db).create(
        workspace_id=1,
        url="https://hooks.example.com/receiver",
        events=["workspace.created"],
    )
