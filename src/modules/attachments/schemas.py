"""Schemas and value objects for attachments."""

from dataclasses import dataclass, field
from datetime import datetime

from src.modules.attachments.models import AttachmentStatus
from src.shared.schemas.base import BaseSchema


@dataclass(frozen=True)
class IncomingFile:
    """A file as supplied by the uploader."""

    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class MigrationReport:
    """Outcome of moving attachments to permanent storage."""

    moved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class SweepReport:
    """Outcome of one expired-attachment sweep."""

    files_removed: int = 0
    bytes_reclaimed: int = 0
    removed_ids: list[str] = field(default_factory=list)
    storage_failures: dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    reason: str | None = None
    attachment_id: str | None = None
    tenant_id: str | None = None


class AttachmentResponse(BaseSchema):
    """Attachment as returned to callers."""

    id: str
    tenant_id: str
    original_name: str
    mime_type: str
    size_bytes: int
    original_size_bytes: int
    is_compressed: bool
    status: AttachmentStatus
    access_token: str
    storage_key: str
    permanent_key: str | None = None
    uploaded_at: datetime
    expires_at: datetime
    processed_at: datetime | None = None


class AttachmentSummary(BaseSchema):
    """Per-tenant list summary (display only)."""

    total_files: int
    total_size: int
    size_limit: int
    can_add: bool


class QuotaResponse(BaseSchema):
    tenant_id: str
    used_bytes: int
    used_mb: float
    usage_percent: int
    remaining_bytes: int
    file_count: int
    max_file_size: int
    max_tenant_size: int
    max_files: int
    can_add: bool


class DeliveryItem(BaseSchema):
    """Pending attachment prepared for an external fetch."""

    attachment_id: str
    token: str
    url: str
    name: str
    mime_type: str
    size: int


class TokenResponse(BaseSchema):
    attachment_id: str
    token: str
    expires_at: datetime


class MoveToPermanentRequest(BaseSchema):
    attachment_ids: list[str]


class MigrationResponse(BaseSchema):
    moved: list[str]
    skipped: list[str]
    failed: dict[str, str]


class AttachmentListResponse(BaseSchema):
    items: list[AttachmentResponse]
    summary: AttachmentSummary


class RemovedResponse(BaseSchema):
    removed: int
