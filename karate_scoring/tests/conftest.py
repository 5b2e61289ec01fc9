"""
Shared fixtures: a fresh SQLite file database per test, session factory for
concurrent callers, and an HTTP client bound to the same database.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from karate_scoring.config import FeatureFlags
from karate_scoring.core import reset_locks
from karate_scoring.database import enable_sqlite_foreign_keys, get_db
from karate_scoring.orm.base import Base


@pytest.fixture(autouse=True)
def default_flags(monkeypatch):
    """Every test starts from the documented flag defaults."""
    monkeypatch.setattr(FeatureFlags, "FEATURE_STRICT_FINALIZE", False)
    monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_RESOLVE_BYES", True)
    monkeypatch.setattr(FeatureFlags, "FEATURE_ENFORCE_JUDGE_ROSTER", True)
    reset_locks()
    yield
    reset_locks()


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scoring_test.db'}",
        echo=False,
        connect_args={"timeout": 30.0}
    )
    enable_sqlite_foreign_keys(test_engine)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    from karate_scoring.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()
