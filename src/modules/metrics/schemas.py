from datetime import date, datetime
from enum import StrEnum
from typing import Any

from src.shared.schemas.base import BaseSchema


class AlertType(StrEnum):
    STORAGE_LIMIT = "storage_limit"
    FAILURE_RATE = "failure_rate"
    PROCESSING_TIME = "processing_time"


class AlertSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Alert(BaseSchema):
    type: AlertType
    severity: AlertSeverity
    message: str
    tenant_id: str | None = None
    created_at: datetime


class MimeTypeCount(BaseSchema):
    mime_type: str
    count: int


class TenantStorage(BaseSchema):
    tenant_id: str
    total_size: int
    file_count: int


class TenantStorageUsage(TenantStorage):
    used_mb: float
    percentage: int


class DailyStats(BaseSchema):
    date: date
    uploads: int
    size: int
    failures: int


class AttachmentMetrics(BaseSchema):
    period_start: datetime
    period_end: datetime
    total_uploads: int
    total_size: int
    success_rate: float
    failure_rate: float
    avg_processing_time_ms: float
    top_mime_types: list[MimeTypeCount]
    storage_by_tenant: list[TenantStorage]
    daily_stats: list[DailyStats]


class RecentAlert(BaseSchema):
    created_at: datetime
    tenant_id: str | None = None
    details: dict[str, Any] | None = None


class DashboardMetrics(BaseSchema):
    total_storage_used: int
    total_files: int
    active_tenants: int
    success_rate: float
    storage_by_tenant: list[TenantStorageUsage]
    recent_alerts: list[RecentAlert]
    trends: list[DailyStats]
