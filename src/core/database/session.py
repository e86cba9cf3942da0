"""Async engine and session factory."""
import logging
from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.core.config import Settings, settings

logger = logging.getLogger(__name__)


def build_engine(config: Settings) -> AsyncEngine:
    if not config.database_url:
        raise ValueError("DATABASE_URL environment variable is not set")
    url = make_url(config.database_url)
    backend = url.get_backend_name()
    logger.info("Connecting to %s database %s at %s", backend, url.database, url.host or "local file")

    options: dict = {"echo": config.debug and config.log_level.upper() == "DEBUG"}
    if backend == "sqlite":
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_pre_ping"] = True
    return create_async_engine(url, **options)


def build_session_factory(bound: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bound, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = build_engine(settings)
async_session = build_session_factory(engine)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session from the app's factory. Commits on success, rolls back on error."""
    factory = getattr(request.app.state, "session_factory", async_session)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
