"""Attachment lifecycle FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from src.core.audit.router import router as audit_router
from src.core.cache import TenantCache
from src.core.config import Settings, settings as default_settings
from src.core.database import async_session, utcnow
from src.core.exceptions import AppException
from src.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_db_error_handler,
    validation_exception_handler,
)
from src.core.logging import configure_logging
from src.core.storage import build_blob_stores
from src.modules.attachments.dependencies import build_attachment_service
from src.modules.attachments.router import router as attachments_router
from src.modules.attachments.service import TenantLocks
from src.modules.attachments.tokens import TokenCodec
from src.modules.cleanup.job import CleanupJob
from src.modules.cleanup.router import router as cleanup_router
from src.modules.metrics.job import MonitoringJob
from src.modules.metrics.router import router as metrics_router

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Process-wide collaborators shared by requests and background jobs."""
    state = app.state
    state.settings = settings
    state.clock = utcnow
    state.session_factory = async_session
    state.temp_store, state.permanent_store = build_blob_stores(settings)
    state.token_codec = TokenCodec(settings.token_secret_key, settings.token_signature_scheme)
    state.tenant_locks = TenantLocks()
    state.attachment_cache = TenantCache(settings.cache_ttl_seconds)
    state.cleanup_job = CleanupJob(
        async_session,
        lambda session: build_attachment_service(state, session),
        settings,
    )
    state.monitoring_job = MonitoringJob(async_session, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background jobs on startup, stop them on shutdown."""
    settings = app.state.settings
    configure_logging(settings.log_level)
    if settings.is_production and settings.token_secret_key == "change-me-in-production":
        logger.warning("TOKEN_SECRET_KEY is the default value; set it before serving real tenants")
    if settings.cleanup_enabled:
        app.state.cleanup_job.start()
    if settings.monitoring_enabled:
        await app.state.monitoring_job.begin()
    yield
    await app.state.cleanup_job.stop()
    if settings.monitoring_enabled:
        await app.state.monitoring_job.end()


def create_app(settings: Settings = default_settings) -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Anexos",
        description="Temporary attachment storage with signed access tokens",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    init_state(app, settings)

    # Exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_db_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(attachments_router, prefix="/api/v1")
    app.include_router(cleanup_router, prefix="/api/v1")
    app.include_router(metrics_router, prefix="/api/v1")
    app.include_router(audit_router, prefix="/api/v1")

    return app


app = create_app()
