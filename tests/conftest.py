from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.core.audit.service import AuditService
from src.core.cache import TenantCache
from src.core.config import MIB, Settings
from src.core.database import get_db
from src.core.database.base import Base
from src.main import create_app
from src.modules.attachments.dependencies import build_attachment_service
from src.modules.attachments.service import AttachmentService, TenantLocks
from src.modules.attachments.tokens import TokenCodec
from src.modules.cleanup.job import CleanupJob
from src.modules.metrics.job import MonitoringJob
from tests.helpers import FlakyBlobStore, FrozenClock

# In-memory SQLite shared by every session through StaticPool
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
test_async_session = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    async with test_async_session() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        storage_path=str(tmp_path / "uploads"),
        public_base_url="http://files.test",
        token_secret_key="test-secret",
        token_signature_scheme="hmac",
        attachment_max_file_size=10 * MIB,
        attachment_max_tenant_size=25 * MIB,
        attachment_max_files_per_tenant=10,
        attachment_compression_threshold=5 * MIB,
        attachment_ttl_hours=24,
        attachment_io_timeout_seconds=2.0,
        cache_ttl_seconds=300,
        cleanup_enabled=False,
        monitoring_enabled=False,
    )


@pytest.fixture
def temp_store(tmp_path) -> FlakyBlobStore:
    return FlakyBlobStore(tmp_path / "uploads" / "temp", "http://files.test", name="temp")


@pytest.fixture
def permanent_store(tmp_path) -> FlakyBlobStore:
    return FlakyBlobStore(tmp_path / "uploads" / "permanent", "http://files.test", name="permanent")


@pytest.fixture
def codec(clock) -> TokenCodec:
    return TokenCodec("test-secret", clock=clock)


@pytest.fixture
def make_service(db_session, temp_store, permanent_store, codec, clock, test_settings):
    """Factory so tests can swap in a failing repository or other settings."""

    def _make(repository=None, settings=None, cache=None, audit=None) -> AttachmentService:
        return AttachmentService(
            db_session,
            temp_store,
            permanent_store,
            codec,
            audit=audit or AuditService(db_session),
            cache=cache,
            locks=TenantLocks(),
            repository=repository,
            clock=clock,
            settings=settings or test_settings,
        )

    return _make


@pytest.fixture
def service(make_service) -> AttachmentService:
    return make_service()


@pytest.fixture
def test_app(test_settings, temp_store, permanent_store, codec, clock) -> FastAPI:
    """App with stores, codec and clock replaced by test doubles."""
    app = create_app(test_settings)
    state = app.state
    state.clock = clock
    state.session_factory = None
    state.temp_store = temp_store
    state.permanent_store = permanent_store
    state.token_codec = codec
    state.tenant_locks = TenantLocks()
    state.attachment_cache = TenantCache(test_settings.cache_ttl_seconds)
    state.cleanup_job = CleanupJob(
        test_async_session,
        lambda session: build_attachment_service(state, session),
        test_settings,
    )
    state.monitoring_job = MonitoringJob(test_async_session, test_settings, clock)
    return app


@pytest.fixture
async def client(test_app: FastAPI, db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database dependency."""

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    test_app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as client:
        yield client

    test_app.dependency_overrides.clear()


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return test_async_session
