from datetime import datetime

from src.shared.schemas.base import BaseSchema


class CleanupResult(BaseSchema):
    """Outcome of one sweeper run."""

    files_removed: int = 0
    bytes_reclaimed: int = 0
    errors: list[str] = []
    duration_ms: int = 0
    executed_at: datetime
    skipped: bool = False


class CleanupStats(BaseSchema):
    total_runs: int
    total_files_removed: int
    average_files_per_run: float
    skipped_runs: int
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None


class CleanupConfig(BaseSchema):
    enabled: bool
    interval_hours: float
    ttl_hours: int
    is_running: bool
    is_scheduled: bool


class CleanupStatusResponse(BaseSchema):
    config: CleanupConfig
    stats: CleanupStats
    last_result: CleanupResult | None = None
