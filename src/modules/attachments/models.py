"""Attachment model: files held on behalf of a tenant (empresa)."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base


class AttachmentStatus(StrEnum):
    """Attachment status enumeration."""

    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSED = "processed"
    ERROR = "error"


class RemovalReason(StrEnum):
    """Why an attachment was removed."""

    USER = "user"
    EXPIRATION = "expiration"
    CLEANUP = "cleanup"
    ERROR = "error"


def new_attachment_id() -> str:
    return str(uuid.uuid4())


PLACEHOLDER_TOKEN = "pending"


class Attachment(Base):
    """Temporary (and, once migrated, permanent) file metadata."""

    __tablename__ = "attachments"
    __table_args__ = (Index("ix_attachments_tenant_status", "tenant_id", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_attachment_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    permanent_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    mime_type: Mapped[str] = mapped_column(String(150), nullable=False)
    # Stored (post-compression) size
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    original_size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    is_compressed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AttachmentStatus.PENDING.value, index=True
    )
    access_token: Mapped[str] = mapped_column(String(255), nullable=False, default=PLACEHOLDER_TOKEN)
    token_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_pending(self) -> bool:
        return self.status == AttachmentStatus.PENDING.value

    @property
    def current_key(self) -> str:
        """Key of the blob currently holding the bytes."""
        return self.permanent_key or self.storage_key
