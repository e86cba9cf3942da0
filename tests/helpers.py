"""Test doubles and payload builders shared across test modules."""

import asyncio
import os
import uuid
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from src.core.storage.base import BlobStoreError
from src.core.storage.local import LocalBlobStore
from src.modules.attachments.models import PLACEHOLDER_TOKEN, Attachment, new_attachment_id
from src.modules.attachments.repository import AttachmentRepository
from src.modules.attachments.schemas import IncomingFile

PDF = "application/pdf"
TENANT = "3f2b9c1e-7a44-4d0b-9e51-0c6a2d8f1b77"
OTHER_TENANT = "8c0d5e2a-1b3f-4e6a-a7d9-2f4b6c8e0a13"


class FrozenClock:
    """Controllable UTC clock shared by the service and the token codec."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FlakyBlobStore(LocalBlobStore):
    """Local store whose operations can be made to fail or hang."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_put = False
        self.fail_put_after: int | None = None
        self.fail_get = False
        self.fail_delete_keys: set[str] = set()
        self.put_delay = 0.0
        self.puts = 0

    async def put(self, key, data, content_type=None):
        if self.put_delay:
            await asyncio.sleep(self.put_delay)
        if self.fail_put or (self.fail_put_after is not None and self.puts >= self.fail_put_after):
            raise BlobStoreError("write refused", key=key)
        self.puts += 1
        await super().put(key, data, content_type)

    async def get(self, key):
        if self.fail_get:
            raise BlobStoreError("read refused", key=key)
        return await super().get(key)

    async def delete(self, keys):
        failures = {key: "delete refused" for key in keys if key in self.fail_delete_keys}
        remaining = [key for key in keys if key not in failures]
        failures.update(await super().delete(remaining))
        return failures

    def keys(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.relative_to(self.root).as_posix() for p in self.root.rglob("*") if p.is_file())


class FailingRepository(AttachmentRepository):
    """Repository that raises a driver error for selected writes."""

    def __init__(self, db, fail_add=False, fail_token_update=False, fail_status=None):
        super().__init__(db)
        self.fail_add = fail_add
        self.fail_token_update = fail_token_update
        self.fail_status = fail_status

    async def add(self, attachment):
        if self.fail_add:
            raise OperationalError("INSERT INTO attachments", {}, Exception("database is locked"))
        return await super().add(attachment)

    async def update(self, attachment, **values):
        if self.fail_token_update and "access_token" in values:
            raise OperationalError("UPDATE attachments", {}, Exception("database is locked"))
        if self.fail_status is not None and values.get("status") == self.fail_status:
            raise OperationalError("UPDATE attachments", {}, Exception("database is locked"))
        return await super().update(attachment, **values)


def pdf_file(name: str = "report.pdf", size: int = 1024, fill: bytes | None = None) -> IncomingFile:
    """PDF-typed payload of exactly ``size`` bytes (incompressible unless ``fill`` is given)."""
    if fill is None:
        data = os.urandom(size)
    else:
        data = (fill * (size // len(fill) + 1))[:size]
    return IncomingFile(name=name, mime_type=PDF, data=data)



async def seed_attachment(
    db,
    tenant_id: str,
    size_bytes: int,
    *,
    uploaded_at: datetime,
    status: str = "pending",
    expires_at: datetime | None = None,
    processed_at: datetime | None = None,
    mime_type: str = PDF,
    name: str = "seed.pdf",
) -> Attachment:
    """Insert a metadata row directly, without a blob behind it."""
    attachment = Attachment(
        id=new_attachment_id(),
        tenant_id=tenant_id,
        original_name=name,
        storage_key=f"{tenant_id}/seed/{uuid.uuid4().hex}_{name}",
        mime_type=mime_type,
        size_bytes=size_bytes,
        original_size_bytes=size_bytes,
        is_compressed=False,
        status=status,
        access_token=PLACEHOLDER_TOKEN,
        token_version=0,
        uploaded_at=uploaded_at,
        expires_at=expires_at or uploaded_at + timedelta(hours=24),
        processed_at=processed_at,
    )
    db.add(attachment)
    await db.flush()
    return attachment
