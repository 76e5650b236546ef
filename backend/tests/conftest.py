from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from audit_engine.components import AuditComponents
from audit_engine.config import Settings
from audit_engine.db import engine_options, get_session
from audit_engine.main import app
from audit_engine.models import SQLModel
from audit_engine.services.integrity import IntegrityHasher
from audit_engine.services.recorder import AuditRecorder
from audit_engine.services.registry import EntityRegistry, build_default_registry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

TEST_INTEGRITY_KEY = "test-integrity-key"


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Create a per-test async engine and ensure tables exist.

    Defaults to a throwaway SQLite file; set TEST_DATABASE_URL to run against Postgres.
    """
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}"
    _engine = create_async_engine(url, **engine_options(url))
    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield _engine
    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await _engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Yield a database session. Stores commit, so isolation comes from the per-test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def hasher() -> IntegrityHasher:
    return IntegrityHasher(TEST_INTEGRITY_KEY)


@pytest.fixture
def settings() -> Settings:
    return Settings(integrity_secret_key=SecretStr(TEST_INTEGRITY_KEY), _env_file=None)


@pytest.fixture
def registry(settings: Settings) -> EntityRegistry:
    return build_default_registry(settings)


@pytest.fixture
async def recorder(
    session_factory: async_sessionmaker[AsyncSession],
    hasher: IntegrityHasher,
    registry: EntityRegistry,
) -> AsyncIterator[AuditRecorder]:
    """A running recorder writing to the test database."""
    _recorder = AuditRecorder(
        session_factory,
        hasher,
        registry,
        worker_count=2,
        queue_maxsize=100,
        version_max_attempts=10,
        shutdown_timeout=5.0,
    )
    _recorder.start()
    yield _recorder
    await _recorder.stop()


@pytest.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    hasher: IntegrityHasher,
    registry: EntityRegistry,
    recorder: AuditRecorder,
) -> AsyncIterator[AsyncClient]:
    """Async HTTP client with the session dependency and audit components overridden."""

    async def _override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _override_get_session
    app.state.components = AuditComponents(hasher=hasher, registry=registry, recorder=recorder)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
    del app.state.components
