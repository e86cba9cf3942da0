from src.core.database.session import async_session, build_engine, build_session_factory, engine, get_db
from src.core.database.base import Base, as_utc, utcnow

__all__ = [
    "async_session",
    "build_engine",
    "build_session_factory",
    "engine",
    "get_db",
    "Base",
    "as_utc",
    "utcnow",
]
