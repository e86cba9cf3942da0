"""Read-only audit trail endpoint."""

from datetime import date, datetime, time, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.schemas import AuditEntryResponse
from src.core.audit.service import list_audit_entries
from src.core.database.session import get_db
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("", response_model=ApiResponse[PaginatedResponse[AuditEntryResponse]])
async def get_audit_trail(
    date_from: date | None = Query(None, description="Filter from date (inclusive)"),
    date_to: date | None = Query(None, description="Filter to date (inclusive)"),
    entity_type: str | None = Query(None),
    entity_id: str | None = Query(None),
    operation: str | None = Query(None),
    result: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List audit log entries, newest first."""
    dt_from = datetime.combine(date_from, time.min).replace(tzinfo=timezone.utc) if date_from else None
    dt_to = datetime.combine(date_to, time.max).replace(tzinfo=timezone.utc) if date_to else None
    entries, total = await list_audit_entries(
        db,
        date_from=dt_from,
        date_to=dt_to,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        result=result,
        page=page,
        limit=limit,
    )
    items = [AuditEntryResponse.model_validate(entry) for entry in entries]
    return ApiResponse(
        data=PaginatedResponse.create(items=items, total=total, page=page, limit=limit),
    )
