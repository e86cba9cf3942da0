"""Periodic alert evaluation and metrics snapshots."""

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.audit.service import AuditOperation, AuditService
from src.core.config import Settings, settings as default_settings
from src.core.database.base import utcnow
from src.core.scheduling import PeriodicJob
from src.modules.metrics.schemas import Alert
from src.modules.metrics.service import ENTITY_TYPE, MetricsService

logger = logging.getLogger(__name__)


class MonitoringJob(PeriodicJob):
    """Checks alert thresholds and records a metrics snapshot every interval."""

    name = "attachment_monitoring"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(settings.alert_check_interval_minutes * 60)
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.last_alerts: list[Alert] = []

    async def run(self) -> list[Alert]:
        async with self.session_factory() as session:
            service = MetricsService(session, self.settings, self.clock)
            alerts = await service.check_and_record_alerts()
            await service.record_snapshot()
            await session.commit()
        self.last_alerts = alerts
        return alerts

    async def _record(self, operation: AuditOperation) -> None:
        async with self.session_factory() as session:
            await AuditService(session).record(
                operation,
                ENTITY_TYPE,
                {"interval_minutes": self.settings.alert_check_interval_minutes},
                actor_id="system",
            )
            await session.commit()

    async def begin(self) -> None:
        """Schedule the loop and leave a monitoring_started audit record."""
        await self._record(AuditOperation.MONITORING_STARTED)
        self.start()

    async def end(self) -> None:
        await self.stop()
        await self._record(AuditOperation.MONITORING_STOPPED)
        logger.info("Monitoring stopped after %s skipped tick(s)", self.skipped_runs)
