"""FastAPI dependencies wiring the attachment service to app state."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import State

from src.core.audit.service import AuditService
from src.core.database import get_db
from src.modules.attachments.service import AttachmentService


def build_attachment_service(state: State, db: AsyncSession) -> AttachmentService:
    """Service around the process-wide stores, codec, locks and cache."""
    return AttachmentService(
        db,
        state.temp_store,
        state.permanent_store,
        state.token_codec,
        audit=AuditService(db, state.session_factory),
        cache=state.attachment_cache,
        locks=state.tenant_locks,
        clock=state.clock,
        settings=state.settings,
    )


def get_attachment_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AttachmentService:
    return build_attachment_service(request.app.state, db)
