"""Shared test fixtures.

Each test gets its own in-memory SQLite database (aiosqlite). SQLite's
driver-level transaction handling is switched off so SAVEPOINTs behave
as they do on PostgreSQL. Tests that need several sessions working at
once use a file-backed database instead (`shared_session_factory`).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from engage.config import get_settings
from engage.database import get_session
from engage.db.models import Base
from engage.dependencies import get_redis_dep
from engage.gamification.seed import seed_badges
from engage.main import create_app


def _manage_sqlite_transactions(eng: AsyncEngine, begin_sql: str) -> None:
    @event.listens_for(eng.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin_sql)


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached; tests that set ENGAGE_* env vars need a fresh copy."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    _manage_sqlite_transactions(eng, "BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for service-level tests."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_db(db_session: AsyncSession) -> AsyncSession:
    """Session over a database holding the default badge catalog."""
    await seed_badges(db_session)
    return db_session


@pytest_asyncio.fixture
async def shared_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Seeded file-backed database for concurrent sessions.

    Every transaction starts with BEGIN IMMEDIATE, taking SQLite's write
    lock up front; a second writer waits for the first to finish instead
    of failing when it upgrades a read lock.
    """
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'engage.db'}",
        connect_args={"timeout": 30},
    )
    _manage_sqlite_transactions(eng, "BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await seed_badges(session)
    yield factory
    await eng.dispose()


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the test database and without Redis."""
    async with session_factory() as session:
        await seed_badges(session)

    app = create_app()

    async def _session_override() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def _no_redis() -> AsyncGenerator[None, None]:
        yield None

    app.dependency_overrides[get_session] = _session_override
    app.dependency_overrides[get_redis_dep] = _no_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-Id": "user-alice"}
