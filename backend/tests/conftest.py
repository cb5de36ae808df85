"""Pytest configuration and fixtures for backend tests.

Database Handling:
- TEST_DATABASE_URL (e.g. postgresql+asyncpg://...) is used when set
- Otherwise each test gets a fresh SQLite database file via aiosqlite
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="termaudit-tests-"))

# Set test environment variables before importing termaudit modules
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT / 'app.db'}"
)
os.environ["RECORDINGS_DIR"] = str(_TEST_ROOT / "recordings")
os.environ["TERMINAL_RETENTION_DAYS"] = "0"
os.environ["TERMINAL_RECORDING_ENABLED"] = "false"
os.environ["AUDIT_WRITE_BASE_DELAY"] = "0.001"


# --- Singleton Reset Fixture ---


def _reset_singletons():
    """Drop process-wide singletons so no state leaks between tests."""
    from termaudit.services.audit_retention import AuditRetentionService
    from termaudit.services.recorder import Recorder
    from termaudit.services.rule_cache import RuleCache
    from termaudit.services.session_tracker import SessionRegistry

    RuleCache._instance = None
    Recorder._instance = None
    SessionRegistry._instance = None
    AuditRetentionService._instance = None
    AuditRetentionService._task = None


@pytest.fixture(autouse=True)
def reset_singletons():
    _reset_singletons()
    yield
    _reset_singletons()


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a database engine with all tables for one test."""
    from termaudit.models.base import BaseModel

    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(url, poolclass=NullPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# --- Service Fixtures ---


@pytest.fixture
def rule_cache():
    """A fresh rule cache installed as the process singleton."""
    from termaudit.services.rule_cache import RuleCache

    cache = RuleCache(history_size=8)
    RuleCache._instance = cache
    return cache


@pytest.fixture
def interceptor(rule_cache):
    from termaudit.services.interceptor import Interceptor

    return Interceptor(rule_cache, match_timeout_ms=100)


@pytest.fixture
def recorder(tmp_path):
    from termaudit.services.recorder import Recorder

    recorder = Recorder(recordings_dir=tmp_path / "recordings", queue_size=256)
    Recorder._instance = recorder
    return recorder


@pytest.fixture
def audit_log(session_maker):
    from termaudit.core.retry import RetryConfig
    from termaudit.services.audit_log import AuditLogService

    return AuditLogService(
        session_factory=session_maker,
        retry_config=RetryConfig(max_retries=2, base_delay=0.001, jitter=False),
    )


@pytest_asyncio.fixture(scope="function")
async def registry(audit_log, recorder, interceptor):
    """Session registry wired to the test database, recorder and rule cache."""
    from termaudit.services.session_tracker import SessionRegistry

    registry = SessionRegistry(audit_log=audit_log, recorder=recorder, interceptor=interceptor)
    SessionRegistry._instance = registry
    yield registry

    # End whatever the test left open so no writer tasks outlive the loop
    await registry.end_all()
    await recorder.close_all()


@pytest_asyncio.fixture(scope="function")
async def async_client(
    session_maker, registry, rule_cache, recorder
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and service overrides."""
    from termaudit.api.deps import get_recorder, get_registry, get_rule_cache
    from termaudit.core.database import get_db
    from termaudit.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_rule_cache] = lambda: rule_cache
    app.dependency_overrides[get_recorder] = lambda: recorder

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    # Clean up
    app.dependency_overrides.clear()


# --- Test Factories ---


@pytest.fixture
def rule_factory(db_session, rule_cache):
    """Factory for creating validated blacklist rules (published to the cache)."""
    from termaudit.services.blacklist import BlacklistService

    async def _create_rule(
        pattern: str = r"^rm\s+-rf",
        description: str = "Recursive delete",
        action: str = "block",
        enabled: bool = True,
        **kwargs,
    ):
        service = BlacklistService(db_session, rule_cache)
        return await service.create(
            pattern=pattern,
            description=description,
            action=action,
            enabled=enabled,
            **kwargs,
        )

    return _create_rule


@pytest.fixture
def terminal_session_factory(db_session):
    """Factory for inserting TerminalSession rows directly (committed)."""
    from termaudit.models.base import utcnow
    from termaudit.models.terminal_session import TerminalSession

    counter = {"n": 0}

    async def _create_session(
        user_id: int = 1,
        server_id: int = 1,
        stream_id: str | None = None,
        **kwargs,
    ) -> TerminalSession:
        counter["n"] += 1
        session = TerminalSession(
            user_id=user_id,
            server_id=server_id,
            stream_id=stream_id or f"stream-{counter['n']}",
            started_at=kwargs.pop("started_at", utcnow()),
            command_count=kwargs.pop("command_count", 0),
            recording_enabled=kwargs.pop("recording_enabled", False),
            **kwargs,
        )
        db_session.add(session)
        await db_session.commit()
        return session

    return _create_session
