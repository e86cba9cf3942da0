"""Usage metrics and threshold alerts over attachment metadata."""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditOperation, AuditResult, AuditService, list_audit_entries
from src.core.config import MIB, Settings, settings as default_settings
from src.core.database.base import as_utc, utcnow
from src.modules.attachments.models import Attachment, AttachmentStatus
from src.modules.attachments.repository import AttachmentRepository
from src.modules.metrics.schemas import (
    Alert,
    AlertSeverity,
    AlertType,
    AttachmentMetrics,
    DailyStats,
    DashboardMetrics,
    MimeTypeCount,
    RecentAlert,
    TenantStorage,
    TenantStorageUsage,
)

logger = logging.getLogger(__name__)

ENTITY_TYPE = "attachment_monitoring"
DEFAULT_PERIOD = timedelta(days=30)
TOP_MIME_TYPES = 10
STORAGE_CRITICAL_PERCENT = 95
STORAGE_HIGH_PERCENT = 80
FAILURE_RATE_CRITICAL = 0.30


def _processing_times_ms(attachments: list[Attachment]) -> list[float]:
    return [
        (as_utc(a.processed_at) - as_utc(a.uploaded_at)).total_seconds() * 1000
        for a in attachments
        if a.processed_at is not None and a.uploaded_at is not None
    ]


def _daily_stats(attachments: list[Attachment]) -> list[DailyStats]:
    days: dict = {}
    for attachment in attachments:
        day = as_utc(attachment.uploaded_at).date()
        stats = days.setdefault(day, DailyStats(date=day, uploads=0, size=0, failures=0))
        stats.uploads += 1
        stats.size += attachment.size_bytes
        if attachment.status == AttachmentStatus.ERROR.value:
            stats.failures += 1
    return [days[day] for day in sorted(days)]


class MetricsService:
    """Read-only aggregation plus alert evaluation.

    Usage is measured against the pending set, the same basis the quota engine
    admits uploads on.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
        audit: AuditService | None = None,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.repository = AttachmentRepository(db)
        self.audit = audit or AuditService(db)

    async def _storage_by_tenant(self) -> list[TenantStorage]:
        rows = await self.repository.usage_by_tenant(AttachmentStatus.PENDING)
        return [TenantStorage(tenant_id=t, total_size=size, file_count=count) for t, size, count in rows]

    async def get_metrics(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> AttachmentMetrics:
        """Totals, rates, processing time, MIME mix and daily stats for uploads in [start, end]."""
        end = as_utc(end) or self.clock()
        start = as_utc(start) or end - DEFAULT_PERIOD
        attachments = await self.repository.list_uploaded_between(start, end)

        total = len(attachments)
        processed = sum(1 for a in attachments if a.status == AttachmentStatus.PROCESSED.value)
        failed = sum(1 for a in attachments if a.status == AttachmentStatus.ERROR.value)
        times = _processing_times_ms(attachments)
        mime_counts = Counter(a.mime_type for a in attachments)

        return AttachmentMetrics(
            period_start=start,
            period_end=end,
            total_uploads=total,
            total_size=sum(a.size_bytes for a in attachments),
            success_rate=round(processed / total, 4) if total else 0.0,
            failure_rate=round(failed / total, 4) if total else 0.0,
            avg_processing_time_ms=round(sum(times) / len(times), 1) if times else 0.0,
            top_mime_types=[
                MimeTypeCount(mime_type=mime, count=count)
                for mime, count in mime_counts.most_common(TOP_MIME_TYPES)
            ],
            storage_by_tenant=await self._storage_by_tenant(),
            daily_stats=_daily_stats(attachments),
        )

    async def dashboard(self) -> DashboardMetrics:
        now = self.clock()
        limit = self.settings.attachment_max_tenant_size
        storage = await self._storage_by_tenant()
        everything = await self.repository.list_uploaded_between()
        processed = sum(1 for a in everything if a.status == AttachmentStatus.PROCESSED.value)
        recent_window = await self.repository.list_uploaded_between(now - DEFAULT_PERIOD, now)
        alerts, _ = await list_audit_entries(
            self.db, operation=AuditOperation.ALERT_CREATED.value, limit=10
        )

        return DashboardMetrics(
            total_storage_used=sum(s.total_size for s in storage),
            total_files=sum(s.file_count for s in storage),
            active_tenants=len(storage),
            success_rate=round(processed / len(everything), 4) if everything else 0.0,
            storage_by_tenant=[
                TenantStorageUsage(
                    **s.model_dump(),
                    used_mb=round(s.total_size / MIB, 2),
                    percentage=round(s.total_size / limit * 100) if limit else 0,
                )
                for s in storage
            ],
            recent_alerts=[
                RecentAlert(created_at=a.created_at, tenant_id=a.entity_id, details=a.details) for a in alerts
            ],
            trends=_daily_stats(recent_window),
        )

    async def evaluate_alerts(self) -> list[Alert]:
        now = self.clock()
        alerts: list[Alert] = []

        limit = self.settings.attachment_max_tenant_size
        for usage in await self._storage_by_tenant():
            percent = usage.total_size / limit * 100 if limit else 0
            if percent >= STORAGE_CRITICAL_PERCENT:
                severity = AlertSeverity.CRITICAL
            elif percent >= STORAGE_HIGH_PERCENT:
                severity = AlertSeverity.HIGH
            else:
                continue
            alerts.append(
                Alert(
                    type=AlertType.STORAGE_LIMIT,
                    severity=severity,
                    message=f"Tenant {usage.tenant_id} reached {percent:.1f}% of its storage limit",
                    tenant_id=usage.tenant_id,
                    created_at=now,
                )
            )

        window = await self.repository.list_uploaded_between(
            now - timedelta(hours=self.settings.alert_window_hours), now
        )
        if window:
            failure_rate = sum(1 for a in window if a.status == AttachmentStatus.ERROR.value) / len(window)
            if failure_rate > self.settings.alert_failure_rate_threshold:
                alerts.append(
                    Alert(
                        type=AlertType.FAILURE_RATE,
                        severity=AlertSeverity.CRITICAL if failure_rate > FAILURE_RATE_CRITICAL else AlertSeverity.HIGH,
                        message=f"High failure rate: {failure_rate * 100:.1f}% in the last {self.settings.alert_window_hours}h",
                        created_at=now,
                    )
                )

        times = _processing_times_ms(window)
        threshold = self.settings.alert_processing_time_threshold_ms
        if times:
            average = sum(times) / len(times)
            if average > threshold:
                alerts.append(
                    Alert(
                        type=AlertType.PROCESSING_TIME,
                        severity=AlertSeverity.HIGH if average > 2 * threshold else AlertSeverity.MEDIUM,
                        message=f"Slow processing: {average / 1000:.1f}s on average",
                        created_at=now,
                    )
                )
        return alerts

    async def check_and_record_alerts(self) -> list[Alert]:
        alerts = await self.evaluate_alerts()
        for alert in alerts:
            await self.audit.record(
                AuditOperation.ALERT_CREATED,
                ENTITY_TYPE,
                {"alert_type": alert.type, "severity": alert.severity, "message": alert.message},
                AuditResult.WARNING,
                entity_id=alert.tenant_id,
                actor_id="system",
            )
        if alerts:
            logger.warning("%d attachment alert(s) raised", len(alerts))
        return alerts

    async def record_snapshot(self) -> AttachmentMetrics:
        metrics = await self.get_metrics(self.clock() - timedelta(hours=self.settings.alert_window_hours))
        await self.audit.record(
            AuditOperation.METRICS_UPDATED,
            ENTITY_TYPE,
            {
                "total_uploads": metrics.total_uploads,
                "total_size": metrics.total_size,
                "success_rate": metrics.success_rate,
                "failure_rate": metrics.failure_rate,
                "avg_processing_time_ms": metrics.avg_processing_time_ms,
            },
            actor_id="system",
        )
        return metrics
