from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditService
from src.core.database import get_db
from src.modules.metrics.schemas import Alert, AttachmentMetrics, DashboardMetrics
from src.modules.metrics.service import MetricsService
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/metrics", tags=["Metrics"])


def get_metrics_service(request: Request, db: AsyncSession = Depends(get_db)) -> MetricsService:
    state = request.app.state
    return MetricsService(db, state.settings, state.clock, AuditService(db, state.session_factory))


@router.get("/attachments", response_model=ApiResponse[AttachmentMetrics])
async def attachment_metrics(
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    service: MetricsService = Depends(get_metrics_service),
):
    """Upload totals and rates for the period (default: last 30 days)."""
    return ApiResponse(success=True, data=await service.get_metrics(date_from, date_to))


@router.get("/dashboard", response_model=ApiResponse[DashboardMetrics])
async def dashboard(service: MetricsService = Depends(get_metrics_service)):
    return ApiResponse(success=True, data=await service.dashboard())


@router.get("/alerts", response_model=ApiResponse[list[Alert]])
async def alerts(
    record: bool = Query(False, description="Also write each alert to the audit log"),
    service: MetricsService = Depends(get_metrics_service),
):
    if record:
        data = await service.check_and_record_alerts()
    else:
        data = await service.evaluate_alerts()
    return ApiResponse(success=True, data=data)
