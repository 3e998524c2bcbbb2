"""Pytest configuration and shared fixtures."""

import os

import pytest
import pytest_asyncio

# Set required environment variables for testing BEFORE importing the app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./factmemory_test.db")
os.environ.setdefault("DATABASE_AUTO_MIGRATE", "false")
os.environ.setdefault("LLM_PROVIDER", "openrouter")
os.environ.setdefault("OPENROUTER_API_KEY", "")
os.environ.setdefault("RAG_ENABLED", "false")

from fastapi.testclient import TestClient

from factmemory.core.config import settings
from factmemory.core.database import DatabaseClient, build_engine, build_session_factory
from factmemory.core.locks import UserLockRegistry
from factmemory.main import app
from factmemory.services.conflict_resolver import ConflictResolver
from factmemory.services.entity_store import EntityStore
from factmemory.services.fact_memory_service import FactMemoryService


@pytest.fixture
def test_client() -> TestClient:
    """Create FastAPI test client.

    Returns:
        TestClient: FastAPI test client instance
    """
    return TestClient(app)


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    """Ensure FastAPI dependency overrides are reset between tests."""
    app.dependency_overrides = {}
    yield
    app.dependency_overrides = {}


@pytest.fixture
def fact_settings():
    """Engine tunables with the LLM fallback switched off."""
    return settings.facts.model_copy(update={"llm_fallback_mode": "never"})


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file per test with the schema created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'facts.db'}")
    await DatabaseClient(engine).create_tables()
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session, fact_settings) -> EntityStore:
    return EntityStore(session, fact_settings)


@pytest.fixture
def resolver(session, store) -> ConflictResolver:
    return ConflictResolver(session, store)


@pytest.fixture
def service(session_factory, fact_settings) -> FactMemoryService:
    return FactMemoryService(session_factory, UserLockRegistry(), fact_settings)
