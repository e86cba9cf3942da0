"""Attachment lifecycle: upload, token access, migration, removal and expiry sweeps."""

import asyncio
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditOperation, AuditResult, AuditService
from src.core.cache import TenantCache
from src.core.config import Settings, settings as default_settings
from src.core.database.base import as_utc, utcnow
from src.core.exceptions import (
    AppException,
    FileTooLargeError,
    FileTypeNotAllowedError,
    MetadataError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    TooManyFilesError,
    ValidationError,
)
from src.core.storage.base import BlobStore, BlobStoreError
from src.modules.attachments.compression import CompressionResult, compress_payload_async, decompress_payload
from src.modules.attachments.models import (
    PLACEHOLDER_TOKEN,
    Attachment,
    AttachmentStatus,
    RemovalReason,
    new_attachment_id,
)
from src.modules.attachments.quota import REASON_COUNT, QuotaEngine, QuotaLimits, QuotaSnapshot
from src.modules.attachments.repository import AttachmentRepository
from src.modules.attachments.schemas import (
    AccessDecision,
    AttachmentResponse,
    AttachmentSummary,
    DeliveryItem,
    IncomingFile,
    MigrationReport,
    SweepReport,
)
from src.modules.attachments.tokens import TokenCodec, short_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENTITY_TYPE = "attachment"
_HEX_PREFIX = re.compile(r"^[0-9a-f]{1,8}$")


class TenantLocks:
    """One asyncio.Lock per tenant, held from quota check until the new rows are committed."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, tenant_id: str) -> asyncio.Lock:
        return self._locks.setdefault(tenant_id, asyncio.Lock())

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[None]:
        async with self.get(tenant_id):
            yield


def _safe_name(name: str) -> str:
    base = PurePosixPath(name.replace("\\", "/")).name
    stem, dot, ext = base.rpartition(".")
    if not dot:
        stem, ext = base, ""
    stem = re.sub(r"[^A-Za-z0-9_-]", "_", stem)[:100] or "file"
    ext = re.sub(r"[^A-Za-z0-9]", "", ext)[:20]
    return f"{stem}.{ext}" if ext else stem


class AttachmentService:
    """The only component that mutates attachment state."""

    def __init__(
        self,
        db: AsyncSession,
        temp_store: BlobStore,
        permanent_store: BlobStore,
        codec: TokenCodec,
        *,
        audit: AuditService | None = None,
        cache: TenantCache | None = None,
        locks: TenantLocks | None = None,
        repository: AttachmentRepository | None = None,
        clock: Callable[[], datetime] = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.temp_store = temp_store
        self.permanent_store = permanent_store
        self.codec = codec
        self.settings = settings
        self.clock = clock
        self.repository = repository or AttachmentRepository(db)
        self.audit = audit or AuditService(db)
        self.cache = cache if cache is not None else TenantCache(settings.cache_ttl_seconds)
        self.locks = locks or TenantLocks()
        self.limits = QuotaLimits.from_settings(settings)
        self.quota = QuotaEngine(self.repository, self.limits)
        self.timeout = settings.attachment_io_timeout_seconds
        self.ttl = timedelta(hours=settings.attachment_ttl_hours)

    # ------------------------------------------------------------------
    # Store call wrappers: deadline + error translation
    # ------------------------------------------------------------------

    async def _storage(self, operation: str, call: Awaitable[T], **context) -> T:
        try:
            return await asyncio.wait_for(call, self.timeout)
        except asyncio.TimeoutError as exc:
            error = StorageError(operation, "timeout")
            await self._record_fault(AuditOperation.STORAGE_ERROR, operation, "timeout", context)
            raise error from exc
        except BlobStoreError as exc:
            await self._record_fault(AuditOperation.STORAGE_ERROR, operation, str(exc), context)
            raise StorageError(operation, str(exc)) from exc

    async def _metadata(self, operation: str, call: Awaitable[T], **context) -> T:
        try:
            return await asyncio.wait_for(call, self.timeout)
        except asyncio.TimeoutError as exc:
            await self._record_fault(AuditOperation.DATABASE_ERROR, operation, "timeout", context)
            raise MetadataError(operation, "timeout") from exc
        except SQLAlchemyError as exc:
            await self._record_fault(AuditOperation.DATABASE_ERROR, operation, str(exc), context)
            raise MetadataError(operation, str(exc)) from exc

    async def _record_fault(self, kind: AuditOperation, operation: str, reason: str, context: dict) -> None:
        await self.audit.record(
            kind,
            ENTITY_TYPE,
            {"operation": operation, "error": reason, **context},
            AuditResult.FAILURE,
            entity_id=context.get("attachment_id"),
        )

    # ------------------------------------------------------------------
    # Validation and quota
    # ------------------------------------------------------------------

    async def _validate_file(self, file: IncomingFile, actor_id: str | None = None) -> None:
        if not file.name or not file.name.strip():
            raise ValidationError("File name is required", field="name")

        type_ok = file.mime_type in self.settings.attachment_allowed_mime_types
        await self.audit.record(
            AuditOperation.VALIDATION_TYPE,
            ENTITY_TYPE,
            {"file_name": file.name, "mime_type": file.mime_type, "valid": type_ok},
            AuditResult.SUCCESS if type_ok else AuditResult.WARNING,
            actor_id=actor_id,
        )
        if not type_ok:
            raise FileTypeNotAllowedError(file.name, file.mime_type)

        size_ok = 0 < file.size <= self.limits.max_file_size
        await self.audit.record(
            AuditOperation.VALIDATION_SIZE,
            ENTITY_TYPE,
            {
                "file_name": file.name,
                "size_bytes": file.size,
                "limit_bytes": self.limits.max_file_size,
                "valid": size_ok,
            },
            AuditResult.SUCCESS if size_ok else AuditResult.WARNING,
            actor_id=actor_id,
        )
        if file.size == 0:
            raise ValidationError(f'File "{file.name}" is empty', field="size_bytes")
        if not size_ok:
            raise FileTooLargeError(file.name, file.size, self.limits.max_file_size)

    async def _check_quota(self, tenant_id: str, sizes: list[int], actor_id: str | None = None) -> None:
        await self._metadata("lock_tenant", self.repository.lock_tenant(tenant_id), tenant_id=tenant_id)
        decision = await self._metadata(
            "compute_quota", self.quota.admit(tenant_id, sizes), tenant_id=tenant_id
        )
        await self.audit.record(
            AuditOperation.VALIDATION_QUOTA,
            ENTITY_TYPE,
            {
                "tenant_id": tenant_id,
                "used_bytes": decision.used_bytes,
                "requested_bytes": decision.requested_bytes,
                "limit_bytes": self.limits.max_tenant_size,
                "file_count": decision.file_count,
                "requested_count": decision.requested_count,
                "admitted": decision.admitted,
            },
            AuditResult.SUCCESS if decision else AuditResult.WARNING,
            actor_id=actor_id,
        )
        if decision:
            return
        if decision.reason == REASON_COUNT:
            raise TooManyFilesError(
                tenant_id, decision.file_count, decision.requested_count, self.limits.max_files
            )
        raise QuotaExceededError(
            tenant_id, decision.used_bytes, decision.requested_bytes, self.limits.max_tenant_size
        )

    async def compute_quota(self, tenant_id: str) -> QuotaSnapshot:
        """Pending usage for the tenant. Never served from cache."""
        return await self._metadata("compute_quota", self.quota.snapshot(tenant_id), tenant_id=tenant_id)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def _storage_key(self, tenant_id: str, file_name: str) -> str:
        now = self.clock()
        tenant_path = re.sub(r"[^A-Za-z0-9_-]", "_", tenant_id)
        stamp = int(now.timestamp() * 1000)
        return f"{tenant_path}/{now:%Y-%m}/{stamp}_{uuid.uuid4().hex[:12]}_{_safe_name(file_name)}"

    async def _compress(self, file: IncomingFile) -> CompressionResult:
        return await compress_payload_async(
            file.data, file.mime_type, self.settings.attachment_compression_threshold
        )

    async def upload(self, tenant_id: str, file: IncomingFile, actor_id: str | None = None) -> Attachment:
        """Validate, quota-check, compress and store one file as a Pending attachment."""
        started = time.monotonic()
        await self.audit.record(
            AuditOperation.UPLOAD_STARTED,
            ENTITY_TYPE,
            {"tenant_id": tenant_id, "file_name": file.name, "size_bytes": file.size, "mime_type": file.mime_type},
            actor_id=actor_id,
        )
        stored: list[Attachment] = []
        try:
            await self._validate_file(file, actor_id)
            async with self.locks.hold(tenant_id):
                await self._check_quota(tenant_id, [file.size], actor_id)
                compressed = await self._compress(file)
                stored.append(await self._store(tenant_id, file, compressed, actor_id))
                await self._commit_upload(tenant_id, stored)
        except AppException as exc:
            for attachment in stored:
                await self._discard(attachment)
            await self._record_upload_failure(tenant_id, file, exc, started, actor_id)
            raise

        attachment = stored[0]
        self.cache.invalidate_tenant(tenant_id)
        await self._record_upload_success(attachment, compressed, started, actor_id)
        return attachment

    async def upload_many(
        self, tenant_id: str, files: list[IncomingFile], actor_id: str | None = None
    ) -> list[Attachment]:
        """Upload a batch: every file is validated and the combined set quota-checked first.

        Files are then stored one after another in the order given. The batch is
        all-or-nothing: a failure removes the files already stored by this call.
        """
        if not files:
            return []
        started = time.monotonic()
        stored: list[Attachment] = []
        current: IncomingFile | None = None
        try:
            for file in files:
                current = file
                await self._validate_file(file, actor_id)
            current = None
            compressed = [await self._compress(file) for file in files]

            async with self.locks.hold(tenant_id):
                await self._check_quota(tenant_id, [c.size for c in compressed], actor_id)
                for file, result in zip(files, compressed):
                    current = file
                    stored.append(await self._store(tenant_id, file, result, actor_id))
                current = None
                await self._commit_upload(tenant_id, stored)
        except AppException as exc:
            for attachment in stored:
                await self._discard(attachment)
            failed = current or files[0]
            await self._record_upload_failure(tenant_id, failed, exc, started, actor_id, batch_size=len(files))
            if stored:
                self.cache.invalidate_tenant(tenant_id)
            raise

        self.cache.invalidate_tenant(tenant_id)
        for attachment, result in zip(stored, compressed):
            await self._record_upload_success(attachment, result, started, actor_id)
        return stored

    async def _store(
        self,
        tenant_id: str,
        file: IncomingFile,
        compressed: CompressionResult,
        actor_id: str | None,
    ) -> Attachment:
        """Blob write, metadata insert and token issue. Compensates on failure."""
        key = self._storage_key(tenant_id, file.name)
        await self._storage(
            "put_temporary",
            self.temp_store.put(key, compressed.data, file.mime_type),
            tenant_id=tenant_id,
            storage_key=key,
        )

        now = self.clock()
        attachment = Attachment(
            id=new_attachment_id(),
            tenant_id=tenant_id,
            original_name=file.name[:255],
            storage_key=key,
            mime_type=file.mime_type,
            size_bytes=compressed.size,
            original_size_bytes=compressed.original_size,
            is_compressed=compressed.compressed,
            status=AttachmentStatus.PENDING.value,
            access_token=PLACEHOLDER_TOKEN,
            token_version=0,
            uploaded_at=now,
            expires_at=now + self.ttl,
        )
        inserted = False
        try:
            await self._metadata(
                "insert_attachment",
                self.repository.add(attachment),
                tenant_id=tenant_id,
                attachment_id=attachment.id,
            )
            inserted = True
            token = self.codec.issue(attachment.id, tenant_id, self.ttl, version=1)
            await self._metadata(
                "store_token",
                self.repository.update(attachment, access_token=token, token_version=1),
                tenant_id=tenant_id,
                attachment_id=attachment.id,
            )
        except AppException:
            await self._delete_blobs(self.temp_store, [key], "compensate_upload")
            if inserted:
                await self._discard_row(attachment)
            raise

        await self.audit.record(
            AuditOperation.TOKEN_ISSUED,
            ENTITY_TYPE,
            {"tenant_id": tenant_id, "expires_in_seconds": int(self.ttl.total_seconds()), "version": 1},
            entity_id=attachment.id,
            actor_id=actor_id,
        )
        return attachment

    async def _commit_upload(self, tenant_id: str, stored: list[Attachment]) -> None:
        """Commit new rows before the tenant lock is released so the next quota check counts them.

        On failure the rows are rolled back here and their blobs deleted; ``stored`` is emptied.
        """
        keys = [attachment.storage_key for attachment in stored]
        try:
            await self._metadata("commit_upload", self.db.commit(), tenant_id=tenant_id, count=len(keys))
        except MetadataError:
            await self.db.rollback()
            stored.clear()
            await self._delete_blobs(self.temp_store, keys, "compensate_upload")
            raise

    async def _record_upload_success(
        self, attachment: Attachment, compressed: CompressionResult, started: float, actor_id: str | None
    ) -> None:
        await self.audit.record(
            AuditOperation.UPLOAD_COMPLETED,
            ENTITY_TYPE,
            {
                "tenant_id": attachment.tenant_id,
                "file_name": attachment.original_name,
                "storage_key": attachment.storage_key,
                "size_bytes": attachment.size_bytes,
                "original_size_bytes": compressed.original_size,
                "compressed": compressed.compressed,
                "reduction_percent": compressed.reduction_percent,
            },
            entity_id=attachment.id,
            actor_id=actor_id,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _record_upload_failure(
        self,
        tenant_id: str,
        file: IncomingFile,
        exc: AppException,
        started: float,
        actor_id: str | None,
        batch_size: int | None = None,
    ) -> None:
        details = {"tenant_id": tenant_id, "file_name": file.name, "error": exc.message, **exc.details}
        if batch_size is not None:
            details["batch_size"] = batch_size
        await self.audit.record(
            AuditOperation.UPLOAD_FAILED,
            ENTITY_TYPE,
            details,
            AuditResult.WARNING if isinstance(exc, ValidationError) else AuditResult.FAILURE,
            actor_id=actor_id,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # ------------------------------------------------------------------
    # Compensation helpers (best effort, never raise)
    # ------------------------------------------------------------------

    async def _delete_blobs(self, store: BlobStore, keys: list[str], operation: str) -> dict[str, str]:
        """Delete keys, logging and returning failures instead of raising."""
        if not keys:
            return {}
        try:
            failures = await self._storage(operation, store.delete(keys), keys=keys)
        except StorageError as exc:
            failures = {key: exc.reason or "storage error" for key in keys}
        for key, reason in failures.items():
            logger.error("Could not delete blob %s from %s during %s: %s", key, store.name, operation, reason)
        if failures:
            await self._record_fault(
                AuditOperation.STORAGE_ERROR, operation, "partial delete failure", {"failures": failures}
            )
        return failures

    async def _discard_row(self, attachment: Attachment) -> None:
        try:
            await asyncio.wait_for(self.repository.delete(attachment.id), self.timeout)
        except (SQLAlchemyError, asyncio.TimeoutError):
            logger.exception("Could not remove metadata for failed upload %s", attachment.id)

    async def _discard(self, attachment: Attachment) -> None:
        await self._delete_blobs(self.temp_store, [attachment.storage_key], "compensate_upload")
        await self._discard_row(attachment)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, attachment_id: str) -> Attachment:
        attachment = await self._metadata(
            "fetch_attachment", self.repository.get(attachment_id), attachment_id=attachment_id
        )
        if attachment is None:
            raise NotFoundError("Attachment", attachment_id)
        return attachment

    async def list_for_tenant(self, tenant_id: str) -> list[AttachmentResponse]:
        cached = self.cache.get(tenant_id, "list")
        if cached is not None:
            return cached
        attachments = await self._metadata(
            "list_attachments", self.repository.list_for_tenant(tenant_id), tenant_id=tenant_id
        )
        items = [AttachmentResponse.model_validate(a) for a in attachments]
        self.cache.set(tenant_id, "list", items)
        return items

    async def summary(self, tenant_id: str) -> AttachmentSummary:
        cached = self.cache.get(tenant_id, "summary")
        if cached is not None:
            return cached
        items = await self.list_for_tenant(tenant_id)
        total = sum(item.size_bytes for item in items)
        result = AttachmentSummary(
            total_files=len(items),
            total_size=total,
            size_limit=self.limits.max_tenant_size,
            can_add=total < self.limits.max_tenant_size and len(items) < self.limits.max_files,
        )
        self.cache.set(tenant_id, "summary", result)
        return result

    async def download(self, attachment_id: str) -> tuple[Attachment, bytes]:
        """Return the attachment and its original (decompressed) bytes."""
        attachment = await self.get(attachment_id)
        store = self.permanent_store if attachment.permanent_key else self.temp_store
        data = await self._storage(
            "download", store.get(attachment.current_key), attachment_id=attachment_id
        )
        if attachment.is_compressed:
            data = decompress_payload(data)
        return attachment, data

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def set_status(self, attachment_id: str, status: AttachmentStatus) -> Attachment:
        attachment = await self.get(attachment_id)
        if attachment.status == AttachmentStatus.PROCESSED.value and status != AttachmentStatus.PROCESSED:
            raise ValidationError("Processed attachments can only be removed", field="status")
        processed_at = self.clock() if status == AttachmentStatus.PROCESSED else None
        await self._metadata(
            "update_status",
            self.repository.update(attachment, status=status.value, processed_at=processed_at),
            attachment_id=attachment_id,
        )
        self.cache.invalidate_tenant(attachment.tenant_id)
        return attachment

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove(
        self,
        attachment_id: str,
        reason: RemovalReason = RemovalReason.USER,
        actor_id: str | None = None,
    ) -> bool:
        """Delete blob(s) and metadata. Returns False if the attachment was already gone."""
        attachment = await self._metadata(
            "fetch_attachment", self.repository.get(attachment_id), attachment_id=attachment_id
        )
        if attachment is None:
            logger.info("Attachment %s already removed", attachment_id)
            return False

        await self._delete_blobs(self.temp_store, [attachment.storage_key], "remove_temporary")
        if attachment.permanent_key:
            await self._delete_blobs(self.permanent_store, [attachment.permanent_key], "remove_permanent")

        deleted = await self._metadata(
            "delete_attachment", self.repository.delete(attachment_id), attachment_id=attachment_id
        )
        self.cache.invalidate_tenant(attachment.tenant_id)
        await self.audit.record(
            AuditOperation.ATTACHMENT_REMOVED,
            ENTITY_TYPE,
            {
                "tenant_id": attachment.tenant_id,
                "file_name": attachment.original_name,
                "size_bytes": attachment.size_bytes,
                "reason": str(reason),
            },
            entity_id=attachment_id,
            actor_id=actor_id,
        )
        return deleted

    async def remove_all_for_tenant(self, tenant_id: str, actor_id: str | None = None) -> int:
        attachments = await self._metadata(
            "list_attachments", self.repository.list_for_tenant(tenant_id), tenant_id=tenant_id
        )
        if not attachments:
            return 0
        await self._delete_blobs(self.temp_store, [a.storage_key for a in attachments], "remove_tenant_temporary")
        permanent_keys = [a.permanent_key for a in attachments if a.permanent_key]
        await self._delete_blobs(self.permanent_store, permanent_keys, "remove_tenant_permanent")
        removed = await self._metadata(
            "delete_attachments",
            self.repository.delete_many([a.id for a in attachments]),
            tenant_id=tenant_id,
        )
        self.cache.invalidate_tenant(tenant_id)
        await self.audit.record(
            AuditOperation.ATTACHMENT_REMOVED,
            ENTITY_TYPE,
            {"tenant_id": tenant_id, "count": removed, "reason": str(RemovalReason.USER)},
            actor_id=actor_id,
        )
        return removed

    # ------------------------------------------------------------------
    # Permanent storage
    # ------------------------------------------------------------------

    def _permanent_key(self, attachment: Attachment) -> str:
        processed_on = self.clock()
        tenant_path, _, rest = attachment.storage_key.partition("/")
        return f"{tenant_path}/{processed_on:%Y-%m}/processed/{PurePosixPath(rest).name}"

    async def move_to_permanent(self, attachment_ids: list[str], actor_id: str | None = None) -> MigrationReport:
        """Move each attachment to permanent storage independently.

        Each item is committed on its own; a failure is logged, the item is
        marked Error and the loop continues.
        """
        report = MigrationReport()
        for attachment_id in attachment_ids:
            started = time.monotonic()
            try:
                moved = await self._move_one(attachment_id, started, actor_id)
            except AppException as exc:
                await self.db.rollback()
                report.failed[attachment_id] = exc.reason if isinstance(exc, (StorageError, MetadataError)) else exc.message
                await self._mark_error(attachment_id)
                continue
            if moved:
                report.moved.append(attachment_id)
            else:
                report.skipped.append(attachment_id)
        return report

    async def _move_one(self, attachment_id: str, started: float, actor_id: str | None) -> bool:
        attachment = await self.get(attachment_id)
        if attachment.status == AttachmentStatus.PROCESSED.value:
            return False
        tenant_id = attachment.tenant_id
        await self._metadata(
            "mark_uploading",
            self.repository.update(attachment, status=AttachmentStatus.UPLOADING.value),
            attachment_id=attachment_id,
        )

        data = await self._storage(
            "download_temporary", self.temp_store.get(attachment.storage_key), attachment_id=attachment_id
        )
        permanent_key = self._permanent_key(attachment)
        await self._storage(
            "upload_permanent",
            self.permanent_store.put(permanent_key, data, attachment.mime_type),
            attachment_id=attachment_id,
        )
        try:
            await self._metadata(
                "mark_processed",
                self.repository.update(
                    attachment,
                    status=AttachmentStatus.PROCESSED.value,
                    permanent_key=permanent_key,
                    processed_at=self.clock(),
                ),
                attachment_id=attachment_id,
            )
            await self._metadata("commit_migration", self.db.commit(), attachment_id=attachment_id)
        except MetadataError:
            await self._delete_blobs(self.permanent_store, [permanent_key], "compensate_migration")
            raise

        await self._delete_blobs(self.temp_store, [attachment.storage_key], "remove_migrated_temporary")
        self.cache.invalidate_tenant(tenant_id)
        await self.audit.record(
            AuditOperation.MOVED_TO_PERMANENT,
            ENTITY_TYPE,
            {"tenant_id": tenant_id, "file_name": attachment.original_name, "permanent_key": permanent_key},
            entity_id=attachment_id,
            actor_id=actor_id,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return True

    async def _mark_error(self, attachment_id: str) -> None:
        try:
            attachment = await asyncio.wait_for(self.repository.get(attachment_id), self.timeout)
            if attachment is None or attachment.status == AttachmentStatus.PROCESSED.value:
                return
            await asyncio.wait_for(
                self.repository.update(attachment, status=AttachmentStatus.ERROR.value), self.timeout
            )
            await self.db.commit()
            self.cache.invalidate_tenant(attachment.tenant_id)
        except (SQLAlchemyError, asyncio.TimeoutError):
            logger.exception("Could not mark attachment %s as error", attachment_id)
            await self.db.rollback()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def renew_token(self, attachment_id: str, actor_id: str | None = None) -> str:
        """Issue a fresh token; previously issued tokens stop validating."""
        attachment = await self.get(attachment_id)
        if attachment.revoked_at is not None:
            raise ValidationError("Access to this attachment was revoked", field="attachment_id")
        version = attachment.token_version + 1
        token = self.codec.issue(attachment.id, attachment.tenant_id, self.ttl, version=version)
        new_expiry = max(as_utc(attachment.expires_at), self.clock() + self.ttl)
        await self._metadata(
            "store_token",
            self.repository.update(attachment, access_token=token, token_version=version, expires_at=new_expiry),
            attachment_id=attachment_id,
        )
        self.cache.invalidate_tenant(attachment.tenant_id)
        await self.audit.record(
            AuditOperation.TOKEN_RENEWED,
            ENTITY_TYPE,
            {"tenant_id": attachment.tenant_id, "version": version},
            entity_id=attachment_id,
            actor_id=actor_id,
        )
        return token

    async def revoke_token(self, attachment_id: str, actor_id: str | None = None) -> None:
        """Expire the attachment now; no token for it validates afterwards."""
        attachment = await self.get(attachment_id)
        now = self.clock()
        values = {
            "expires_at": now - timedelta(seconds=1),
            "revoked_at": now,
            "token_version": attachment.token_version + 1,
        }
        if attachment.status != AttachmentStatus.PROCESSED.value:
            values["status"] = AttachmentStatus.ERROR.value
        await self._metadata(
            "revoke_token", self.repository.update(attachment, **values), attachment_id=attachment_id
        )
        self.cache.invalidate_tenant(attachment.tenant_id)
        await self.audit.record(
            AuditOperation.TOKEN_REVOKED,
            ENTITY_TYPE,
            {"tenant_id": attachment.tenant_id},
            entity_id=attachment_id,
            actor_id=actor_id,
        )

    def _check_access(self, attachment: Attachment, token: str, version: int | None, tenant_prefix: str | None) -> str | None:
        """Reason to deny access to a resolved attachment, or None."""
        if short_id(attachment.tenant_id) != tenant_prefix:
            return "tenant mismatch"
        if attachment.access_token != token or attachment.token_version != version:
            return "token superseded"
        if attachment.revoked_at is not None:
            return "revoked"
        if as_utc(attachment.expires_at) < self.clock():
            return "attachment expired"
        return None

    async def _record_validation(self, decision: AccessDecision) -> AccessDecision:
        await self.audit.record(
            AuditOperation.TOKEN_VALIDATED,
            ENTITY_TYPE,
            {"granted": decision.granted, "reason": decision.reason, "tenant_id": decision.tenant_id},
            AuditResult.SUCCESS if decision.granted else AuditResult.WARNING,
            entity_id=decision.attachment_id,
        )
        return decision

    async def validate_access(self, attachment_id: str, token: str) -> AccessDecision:
        """Full access check for a known attachment id. Never raises on bad tokens."""
        result = self.codec.validate(token)
        if not result.valid:
            return await self._record_validation(AccessDecision(False, result.reason, attachment_id))
        attachment = await self._metadata(
            "fetch_attachment", self.repository.get(attachment_id), attachment_id=attachment_id
        )
        if attachment is None:
            return await self._record_validation(AccessDecision(False, "not found", attachment_id))
        if short_id(attachment.id) != result.attachment_id:
            return await self._record_validation(AccessDecision(False, "token does not match attachment", attachment_id))
        reason = self._check_access(attachment, token, result.version, result.tenant_id)
        return await self._record_validation(
            AccessDecision(reason is None, reason, attachment.id, attachment.tenant_id)
        )

    async def resolve_token(self, token: str) -> tuple[AccessDecision, Attachment | None]:
        """Resolve a bare token to the attachment it currently grants, if any."""
        result = self.codec.validate(token)
        if not result.valid:
            return await self._record_validation(AccessDecision(False, result.reason)), None
        if not _HEX_PREFIX.match(result.attachment_id or ""):
            return await self._record_validation(AccessDecision(False, "malformed")), None
        candidates = await self._metadata(
            "resolve_token", self.repository.find_by_prefix(result.attachment_id)
        )
        matches = [c for c in candidates if c.access_token == token]
        if len(matches) != 1:
            return await self._record_validation(AccessDecision(False, "not found")), None
        attachment = matches[0]
        reason = self._check_access(attachment, token, result.version, result.tenant_id)
        decision = AccessDecision(reason is None, reason, attachment.id, attachment.tenant_id)
        await self._record_validation(decision)
        return decision, attachment if decision.granted else None

    async def prepare_for_delivery(self, tenant_id: str, actor_id: str | None = None) -> list[DeliveryItem]:
        """Issue a fresh token for every Pending attachment of the tenant."""
        started = time.monotonic()
        pending = await self._metadata(
            "list_pending",
            self.repository.list_for_tenant(tenant_id, AttachmentStatus.PENDING),
            tenant_id=tenant_id,
        )
        items: list[DeliveryItem] = []
        for attachment in pending:
            if attachment.revoked_at is not None:
                continue
            version = attachment.token_version + 1
            token = self.codec.issue(attachment.id, tenant_id, self.ttl, version=version)
            new_expiry = max(as_utc(attachment.expires_at), self.clock() + self.ttl)
            await self._metadata(
                "store_token",
                self.repository.update(attachment, access_token=token, token_version=version, expires_at=new_expiry),
                attachment_id=attachment.id,
            )
            items.append(
                DeliveryItem(
                    attachment_id=attachment.id,
                    token=token,
                    url=self.temp_store.public_url(attachment.storage_key),
                    name=attachment.original_name,
                    mime_type=attachment.mime_type,
                    size=attachment.size_bytes,
                )
            )
        self.cache.invalidate_tenant(tenant_id)
        await self.audit.record(
            AuditOperation.WEBHOOK_PREPARED,
            ENTITY_TYPE,
            {
                "tenant_id": tenant_id,
                "attachments": [{"attachment_id": i.attachment_id, "name": i.name, "size": i.size} for i in items],
            },
            actor_id=actor_id,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return items

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> SweepReport:
        """Remove every expired, non-processed attachment: blobs in one batch, then rows in one batch.

        Blob failures are logged per item and do not stop the metadata delete.
        A metadata failure propagates; the rows stay expired for the next run.
        """
        started = time.monotonic()
        now = self.clock()
        expired = [
            a
            for a in await self._metadata("list_expired", self.repository.list_expired(now))
            if a.status != AttachmentStatus.PROCESSED.value
        ]
        report = SweepReport()
        if expired:
            report.storage_failures = await self._delete_blobs(
                self.temp_store, [a.storage_key for a in expired], "remove_expired"
            )
            ids = [a.id for a in expired]
            report.files_removed = await self._metadata(
                "delete_expired", self.repository.delete_many(ids), count=len(ids)
            )
            report.removed_ids = ids
            report.bytes_reclaimed = sum(a.size_bytes for a in expired)
            for tenant_id in {a.tenant_id for a in expired}:
                self.cache.invalidate_tenant(tenant_id)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        await self.audit.record(
            AuditOperation.CLEANUP_EXPIRED,
            ENTITY_TYPE,
            {
                "files_removed": report.files_removed,
                "bytes_reclaimed": report.bytes_reclaimed,
                "storage_failures": len(report.storage_failures),
                "attachments": [
                    {"attachment_id": a.id, "tenant_id": a.tenant_id, "file_name": a.original_name}
                    for a in expired[:50]
                ],
            },
            AuditResult.WARNING if report.storage_failures else AuditResult.SUCCESS,
            actor_id="system",
            duration_ms=report.duration_ms,
        )
        return report
