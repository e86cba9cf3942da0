"""Metadata store for attachments (SQLAlchemy)."""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.modules.attachments.models import Attachment, AttachmentStatus


class AttachmentRepository:
    """CRUD and aggregate queries over the attachments table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, attachment: Attachment) -> Attachment:
        self.db.add(attachment)
        await self.db.flush()
        await self.db.refresh(attachment)
        return attachment

    async def get(self, attachment_id: str) -> Attachment | None:
        result = await self.db.execute(select(Attachment).where(Attachment.id == attachment_id))
        return result.scalar_one_or_none()

    async def lock_tenant(self, tenant_id: str) -> None:
        """Transaction-scoped tenant lock on PostgreSQL, released at commit or rollback.

        Other backends rely on the in-process ``TenantLocks`` alone.
        """
        if self.db.get_bind().dialect.name != "postgresql":
            return
        await self.db.execute(select(func.pg_advisory_xact_lock(func.hashtext(tenant_id))))

    async def find_by_prefix(self, attachment_prefix: str) -> list[Attachment]:
        """Attachments whose id starts with the (dash-free) prefix."""
        result = await self.db.execute(
            select(Attachment).where(
                func.lower(func.replace(Attachment.id, "-", "")).like(f"{attachment_prefix.lower()}%")
            )
        )
        return list(result.scalars().all())

    async def list_for_tenant(
        self, tenant_id: str, status: AttachmentStatus | None = None
    ) -> list[Attachment]:
        query = (
            select(Attachment)
            .where(Attachment.tenant_id == tenant_id)
            .order_by(Attachment.uploaded_at.desc(), Attachment.id)
        )
        if status is not None:
            query = query.where(Attachment.status == status.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def sum_size(self, tenant_id: str, status: AttachmentStatus) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Attachment.size_bytes), 0)).where(
                Attachment.tenant_id == tenant_id,
                Attachment.status == status.value,
            )
        )
        return int(result.scalar_one())

    async def count(self, tenant_id: str, status: AttachmentStatus) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(Attachment).where(
                Attachment.tenant_id == tenant_id,
                Attachment.status == status.value,
            )
        )
        return int(result.scalar_one())

    async def usage_by_tenant(self, status: AttachmentStatus) -> list[tuple[str, int, int]]:
        """(tenant_id, total_bytes, file_count) per tenant, largest first."""
        total = func.coalesce(func.sum(Attachment.size_bytes), 0)
        result = await self.db.execute(
            select(Attachment.tenant_id, total, func.count())
            .where(Attachment.status == status.value)
            .group_by(Attachment.tenant_id)
            .order_by(total.desc())
        )
        return [(row[0], int(row[1]), int(row[2])) for row in result.all()]

    async def update(self, attachment: Attachment, **values: Any) -> Attachment:
        for field, value in values.items():
            setattr(attachment, field, value)
        await self.db.flush()
        return attachment

    async def delete(self, attachment_id: str) -> bool:
        """Delete one row. Returns False when it was already gone."""
        result = await self.db.execute(delete(Attachment).where(Attachment.id == attachment_id))
        await self.db.flush()
        return result.rowcount > 0

    async def delete_many(self, attachment_ids: list[str]) -> int:
        if not attachment_ids:
            return 0
        result = await self.db.execute(delete(Attachment).where(Attachment.id.in_(attachment_ids)))
        await self.db.flush()
        return result.rowcount

    async def list_expired(self, now: datetime) -> list[Attachment]:
        """All attachments whose expiry has passed, regardless of status. The sweep filters further."""
        result = await self.db.execute(
            select(Attachment).where(Attachment.expires_at < now).order_by(Attachment.expires_at)
        )
        return list(result.scalars().all())

    async def list_uploaded_between(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[Attachment]:
        query = select(Attachment).order_by(Attachment.uploaded_at)
        if start is not None:
            query = query.where(Attachment.uploaded_at >= start)
        if end is not None:
            query = query.where(Attachment.uploaded_at <= end)
        result = await self.db.execute(query)
        return list(result.scalars().all())
