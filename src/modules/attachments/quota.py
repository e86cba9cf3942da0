"""Per-tenant quota: per-file limit, aggregate pending bytes and file count."""

from dataclasses import dataclass

from src.core.config import MIB, Settings
from src.modules.attachments.models import AttachmentStatus
from src.modules.attachments.repository import AttachmentRepository


@dataclass(frozen=True)
class QuotaLimits:
    max_file_size: int
    max_tenant_size: int
    max_files: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "QuotaLimits":
        return cls(
            max_file_size=settings.attachment_max_file_size,
            max_tenant_size=settings.attachment_max_tenant_size,
            max_files=settings.attachment_max_files_per_tenant,
        )


@dataclass(frozen=True)
class QuotaSnapshot:
    """Pending usage of one tenant, recomputed on every request."""

    tenant_id: str
    used_bytes: int
    file_count: int
    limits: QuotaLimits

    @property
    def remaining_bytes(self) -> int:
        return max(self.limits.max_tenant_size - self.used_bytes, 0)

    @property
    def usage_percent(self) -> int:
        if self.limits.max_tenant_size <= 0:
            return 0
        return round(self.used_bytes / self.limits.max_tenant_size * 100)

    @property
    def used_mb(self) -> float:
        return round(self.used_bytes / MIB, 2)

    @property
    def can_add(self) -> bool:
        return self.used_bytes < self.limits.max_tenant_size and self.file_count < self.limits.max_files


@dataclass(frozen=True)
class QuotaDecision:
    admitted: bool
    used_bytes: int
    requested_bytes: int
    file_count: int
    requested_count: int
    limits: QuotaLimits
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.admitted


REASON_SIZE = "size"
REASON_COUNT = "count"


class QuotaEngine:
    """Stateless admission check over the tenant's current Pending set."""

    def __init__(self, repository: AttachmentRepository, limits: QuotaLimits):
        self.repository = repository
        self.limits = limits

    async def current_usage(self, tenant_id: str) -> int:
        return await self.repository.sum_size(tenant_id, AttachmentStatus.PENDING)

    async def current_file_count(self, tenant_id: str) -> int:
        return await self.repository.count(tenant_id, AttachmentStatus.PENDING)

    async def snapshot(self, tenant_id: str) -> QuotaSnapshot:
        return QuotaSnapshot(
            tenant_id=tenant_id,
            used_bytes=await self.current_usage(tenant_id),
            file_count=await self.current_file_count(tenant_id),
            limits=self.limits,
        )

    async def admit(self, tenant_id: str, candidate_sizes: list[int]) -> QuotaDecision:
        """Admit iff used + sum(candidates) <= limit (inclusive) and the file count fits."""
        snapshot = await self.snapshot(tenant_id)
        return self.decide(snapshot, candidate_sizes)

    def decide(self, snapshot: QuotaSnapshot, candidate_sizes: list[int]) -> QuotaDecision:
        requested = sum(candidate_sizes)
        reason = None
        if snapshot.used_bytes + requested > self.limits.max_tenant_size:
            reason = REASON_SIZE
        elif snapshot.file_count + len(candidate_sizes) > self.limits.max_files:
            reason = REASON_COUNT
        return QuotaDecision(
            admitted=reason is None,
            used_bytes=snapshot.used_bytes,
            requested_bytes=requested,
            file_count=snapshot.file_count,
            requested_count=len(candidate_sizes),
            limits=self.limits,
            reason=reason,
        )
