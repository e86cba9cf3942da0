"""Expiration sweeper: periodically removes expired temporary attachments."""

import logging
import time
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import Settings, settings as default_settings
from src.core.database.base import utcnow
from src.core.exceptions import AppException
from src.core.scheduling import PeriodicJob
from src.modules.attachments.service import AttachmentService
from src.modules.cleanup.schemas import CleanupConfig, CleanupResult, CleanupStats

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[AsyncSession], AttachmentService]


class CleanupJob(PeriodicJob):
    """Runs ``AttachmentService.sweep_expired`` on its own session every interval."""

    name = "attachment_cleanup"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service_factory: ServiceFactory,
        settings: Settings = default_settings,
    ):
        super().__init__(settings.cleanup_interval_hours * 3600)
        self.session_factory = session_factory
        self.service_factory = service_factory
        self.settings = settings
        self.total_runs = 0
        self.total_files_removed = 0
        self.last_result: CleanupResult | None = None

    async def run(self) -> CleanupResult:
        started = time.monotonic()
        executed_at = utcnow()
        errors: list[str] = []
        files_removed = bytes_reclaimed = 0
        async with self.session_factory() as session:
            service = self.service_factory(session)
            try:
                report = await service.sweep_expired()
                await session.commit()
            except AppException as exc:
                await session.rollback()
                logger.error("Cleanup run failed: %s %s", exc.message, exc.details)
                errors.append(exc.message)
            else:
                files_removed = report.files_removed
                bytes_reclaimed = report.bytes_reclaimed
                errors.extend(f"{key}: {reason}" for key, reason in report.storage_failures.items())

        result = CleanupResult(
            files_removed=files_removed,
            bytes_reclaimed=bytes_reclaimed,
            errors=errors,
            duration_ms=int((time.monotonic() - started) * 1000),
            executed_at=executed_at,
        )
        self.total_runs += 1
        self.total_files_removed += files_removed
        self.last_result = result
        logger.info(
            "Cleanup run finished: %d file(s) removed, %d error(s), %dms",
            result.files_removed,
            len(result.errors),
            result.duration_ms,
        )
        return result

    async def run_once(self) -> CleanupResult:
        """Manual trigger. Reports a skipped result when a run is already in progress."""
        result = await self.trigger()
        if result is None:
            return CleanupResult(executed_at=utcnow(), skipped=True)
        return result

    @property
    def stats(self) -> CleanupStats:
        average = self.total_files_removed / self.total_runs if self.total_runs else 0.0
        return CleanupStats(
            total_runs=self.total_runs,
            total_files_removed=self.total_files_removed,
            average_files_per_run=round(average, 2),
            skipped_runs=self.skipped_runs,
            last_run_at=self.last_run_at,
            next_run_at=self.next_run_at,
        )

    def config(self) -> CleanupConfig:
        return CleanupConfig(
            enabled=self.settings.cleanup_enabled,
            interval_hours=self.interval_seconds / 3600,
            ttl_hours=self.settings.attachment_ttl_hours,
            is_running=self.is_running,
            is_scheduled=self.is_scheduled,
        )
