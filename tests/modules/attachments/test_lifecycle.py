"""Tests for AttachmentService after upload: removal, sweeps, migration, tokens and delivery."""

import asyncio

import pytest
from sqlalchemy import select

from src.core.audit.models import AuditLog
from src.core.cache import TenantCache
from src.core.config import MIB
from src.core.database.base import as_utc
from src.core.exceptions import NotFoundError, ValidationError
from src.core.storage.base import BlobStoreError
from src.modules.attachments.models import Attachment, AttachmentStatus, RemovalReason
from src.modules.attachments.service import TenantLocks
from src.modules.attachments.tokens import REASON_BAD_SIGNATURE, REASON_EXPIRED
from tests.helpers import OTHER_TENANT, TENANT, pdf_file, seed_attachment


async def _ids(db_session) -> set[str]:
    return set((await db_session.execute(select(Attachment.id))).scalars().all())


class TestRemove:
    async def test_remove_deletes_blob_and_row(self, service, temp_store, db_session):
        attachment = await service.upload(TENANT, pdf_file())

        assert await service.remove(attachment.id) is True

        assert temp_store.keys() == []
        assert await _ids(db_session) == set()
        assert (await service.compute_quota(TENANT)).used_bytes == 0

    async def test_remove_is_idempotent(self, service):
        attachment = await service.upload(TENANT, pdf_file())
        await service.remove(attachment.id, RemovalReason.USER)

        assert await service.remove(attachment.id) is False

    async def test_blob_delete_failure_still_removes_row(self, service, temp_store, db_session):
        attachment = await service.upload(TENANT, pdf_file())
        temp_store.fail_delete_keys.add(attachment.storage_key)

        assert await service.remove(attachment.id) is True

        assert await _ids(db_session) == set()
        errors = (
            await db_session.execute(select(AuditLog).where(AuditLog.operation == "storage_error"))
        ).scalars().all()
        assert errors and errors[0].result == "failure"

    async def test_remove_all_for_tenant(self, service, temp_store, db_session):
        await service.upload_many(TENANT, [pdf_file("a.pdf"), pdf_file("b.pdf")])
        other = await service.upload(OTHER_TENANT, pdf_file("c.pdf"))

        assert await service.remove_all_for_tenant(TENANT) == 2

        assert await _ids(db_session) == {other.id}
        assert temp_store.keys() == [other.storage_key]
        assert await service.remove_all_for_tenant(TENANT) == 0


class TestSweepExpired:
    async def test_scenario_sweep_removes_only_expired(self, service, temp_store, clock):
        old = await service.upload_many(TENANT, [pdf_file("old1.pdf"), pdf_file("old2.pdf")])
        clock.advance(hours=25)
        fresh = await service.upload(TENANT, pdf_file("fresh.pdf"))

        report = await service.sweep_expired()

        assert report.files_removed == 2
        assert set(report.removed_ids) == {a.id for a in old}
        assert report.bytes_reclaimed == sum(a.size_bytes for a in old)
        assert temp_store.keys() == [fresh.storage_key]
        quota = await service.compute_quota(TENANT)
        assert quota.file_count == 1

        second = await service.sweep_expired()
        assert second.files_removed == 0

    async def test_remove_then_sweep_is_idempotent(self, service, temp_store, clock, db_session):
        attachment = await service.upload(TENANT, pdf_file())
        assert await service.remove(attachment.id) is True

        clock.advance(hours=25)
        report = await service.sweep_expired()

        assert report.files_removed == 0
        assert report.storage_failures == {}
        assert await service.remove(attachment.id) is False
        assert temp_store.keys() == []
        assert await _ids(db_session) == set()

    async def test_boundary_is_strict(self, service, clock):
        await service.upload(TENANT, pdf_file())
        clock.advance(hours=24)
        assert (await service.sweep_expired()).files_removed == 0

    async def test_processed_and_error_rows(self, service, db_session, clock):
        now = clock()
        processed = await seed_attachment(
            db_session, TENANT, MIB, uploaded_at=now, status=AttachmentStatus.PROCESSED.value
        )
        failed = await seed_attachment(db_session, TENANT, MIB, uploaded_at=now, status=AttachmentStatus.ERROR.value)
        clock.advance(days=2)

        report = await service.sweep_expired()

        assert report.removed_ids == [failed.id]
        assert await _ids(db_session) == {processed.id}

    async def test_blob_failure_does_not_keep_row(self, service, temp_store, clock, db_session):
        attachment = await service.upload(TENANT, pdf_file())
        temp_store.fail_delete_keys.add(attachment.storage_key)
        clock.advance(hours=25)

        report = await service.sweep_expired()

        assert report.files_removed == 1
        assert attachment.storage_key in report.storage_failures
        assert await _ids(db_session) == set()

    async def test_store_outage_does_not_keep_rows(self, service, temp_store, clock, db_session, monkeypatch):
        first = await service.upload(TENANT, pdf_file("a.pdf"))
        second = await service.upload(TENANT, pdf_file("b.pdf"))
        clock.advance(hours=25)

        async def unreachable(keys):
            raise BlobStoreError("Could not open S3 client for delete: connect timeout")

        monkeypatch.setattr(temp_store, "delete", unreachable)
        report = await service.sweep_expired()

        assert report.files_removed == 2
        assert set(report.storage_failures) == {first.storage_key, second.storage_key}
        assert await _ids(db_session) == set()

    async def test_sweep_is_audited(self, service, db_session, clock):
        await service.upload(TENANT, pdf_file())
        clock.advance(hours=25)
        await service.sweep_expired()

        entry = (
            await db_session.execute(select(AuditLog).where(AuditLog.operation == "cleanup_expired"))
        ).scalar_one()
        assert entry.details["files_removed"] == 1
        assert entry.actor_id == "system"


class TestMoveToPermanent:
    async def test_scenario_partial_failure(self, service, db_session, temp_store, permanent_store):
        first = await service.upload(TENANT, pdf_file("a.pdf"))
        second = await service.upload(TENANT, pdf_file("b.pdf"))
        await db_session.commit()

        report = await service.move_to_permanent(["00000000-missing", first.id, second.id])

        assert report.moved == [first.id, second.id]
        assert list(report.failed) == ["00000000-missing"]
        for attachment_id in (first.id, second.id):
            moved = await service.get(attachment_id)
            assert moved.status == AttachmentStatus.PROCESSED.value
            assert moved.permanent_key is not None
            assert moved.processed_at is not None
        assert temp_store.keys() == []
        assert len(permanent_store.keys()) == 2

    async def test_storage_failure_marks_error(self, service, db_session, temp_store, permanent_store):
        attachment = await service.upload(TENANT, pdf_file())
        await db_session.commit()
        permanent_store.fail_put = True

        report = await service.move_to_permanent([attachment.id])

        assert report.moved == []
        assert report.failed[attachment.id] == "write refused"
        reloaded = await service.get(attachment.id)
        assert reloaded.status == AttachmentStatus.ERROR.value
        assert reloaded.permanent_key is None
        assert temp_store.keys() == [reloaded.storage_key]

    async def test_already_processed_is_skipped(self, service, db_session):
        attachment = await service.upload(TENANT, pdf_file())
        await db_session.commit()
        await service.move_to_permanent([attachment.id])

        report = await service.move_to_permanent([attachment.id])

        assert report.skipped == [attachment.id]
        assert report.moved == []

    async def test_processed_file_is_downloadable_and_removable(self, service, db_session, permanent_store):
        file = pdf_file("final.pdf", 4096)
        attachment = await service.upload(TENANT, file)
        await db_session.commit()
        await service.move_to_permanent([attachment.id])

        _, content = await service.download(attachment.id)
        assert content == file.data

        assert await service.remove(attachment.id) is True
        assert permanent_store.keys() == []

    async def test_processed_usage_leaves_quota(self, service, db_session):
        attachment = await service.upload(TENANT, pdf_file(size=2 * MIB))
        await db_session.commit()
        await service.move_to_permanent([attachment.id])
        assert (await service.compute_quota(TENANT)).used_bytes == 0


class TestStatus:
    async def test_set_processed_records_time(self, service, clock):
        attachment = await service.upload(TENANT, pdf_file())
        updated = await service.set_status(attachment.id, AttachmentStatus.PROCESSED)
        assert updated.processed_at == clock()

    async def test_processed_cannot_go_back(self, service):
        attachment = await service.upload(TENANT, pdf_file())
        await service.set_status(attachment.id, AttachmentStatus.PROCESSED)
        with pytest.raises(ValidationError):
            await service.set_status(attachment.id, AttachmentStatus.PENDING)

    async def test_unknown_attachment(self, service):
        with pytest.raises(NotFoundError):
            await service.get("does-not-exist")


class TestTokens:
    async def test_upload_token_grants_access(self, service):
        attachment = await service.upload(TENANT, pdf_file())

        decision = await service.validate_access(attachment.id, attachment.access_token)

        assert decision.granted is True
        assert decision.tenant_id == TENANT

    async def test_renew_supersedes_old_token(self, service, clock):
        attachment = await service.upload(TENANT, pdf_file())
        old_token = attachment.access_token
        clock.advance(hours=20)

        new_token = await service.renew_token(attachment.id)

        assert new_token != old_token
        assert (await service.validate_access(attachment.id, new_token)).granted
        old = await service.validate_access(attachment.id, old_token)
        assert old.granted is False
        assert old.reason == "token superseded"
        reloaded = await service.get(attachment.id)
        assert as_utc(reloaded.expires_at) == clock() + service.ttl

    async def test_revoke_denies_access(self, service):
        attachment = await service.upload(TENANT, pdf_file())
        token = attachment.access_token

        await service.revoke_token(attachment.id)

        assert (await service.validate_access(attachment.id, token)).granted is False
        reloaded = await service.get(attachment.id)
        assert reloaded.status == AttachmentStatus.ERROR.value
        assert reloaded.revoked_at is not None
        with pytest.raises(ValidationError):
            await service.renew_token(attachment.id)

    async def test_expired_token(self, service, clock):
        attachment = await service.upload(TENANT, pdf_file())
        clock.advance(hours=24, seconds=1)

        decision = await service.validate_access(attachment.id, attachment.access_token)

        assert decision.granted is False
        assert decision.reason == REASON_EXPIRED

    async def test_token_for_another_attachment(self, service):
        first = await service.upload(TENANT, pdf_file("a.pdf"))
        second = await service.upload(TENANT, pdf_file("b.pdf"))

        decision = await service.validate_access(second.id, first.access_token)

        assert decision.granted is False

    async def test_token_signed_for_another_tenant(self, service, codec):
        attachment = await service.upload(TENANT, pdf_file())
        forged = codec.issue(attachment.id, OTHER_TENANT, service.ttl, version=attachment.token_version)

        decision = await service.validate_access(attachment.id, forged)

        assert decision.granted is False
        assert decision.reason == "tenant mismatch"

    async def test_resolve_token(self, service):
        attachment = await service.upload(TENANT, pdf_file())

        decision, resolved = await service.resolve_token(attachment.access_token)

        assert decision.granted is True
        assert resolved.id == attachment.id

    async def test_resolve_tampered_token(self, service):
        attachment = await service.upload(TENANT, pdf_file())
        payload, signature = attachment.access_token.split(".")
        tampered = f"{payload}.{'0' if signature[0] != '0' else '1'}{signature[1:]}"

        decision, resolved = await service.resolve_token(tampered)

        assert decision.granted is False
        assert decision.reason == REASON_BAD_SIGNATURE
        assert resolved is None

    async def test_resolve_after_removal(self, service):
        attachment = await service.upload(TENANT, pdf_file())
        await service.remove(attachment.id)

        decision, resolved = await service.resolve_token(attachment.access_token)

        assert decision.granted is False
        assert decision.reason == "not found"
        assert resolved is None


class TestDelivery:
    async def test_prepare_for_delivery(self, service, codec):
        pending = await service.upload_many(TENANT, [pdf_file("a.pdf", 100), pdf_file("b.pdf", 200)])
        await service.set_status(pending[1].id, AttachmentStatus.PROCESSED)
        old_token = pending[0].access_token

        items = await service.prepare_for_delivery(TENANT)

        assert [item.attachment_id for item in items] == [pending[0].id]
        item = items[0]
        assert item.url == f"http://files.test/temp/{pending[0].storage_key}"
        assert item.name == "a.pdf"
        assert item.size == 100
        assert codec.validate(item.token).valid
        assert (await service.validate_access(item.attachment_id, item.token)).granted
        assert not (await service.validate_access(item.attachment_id, old_token)).granted

    async def test_nothing_pending(self, service):
        assert await service.prepare_for_delivery(TENANT) == []


class TestListingCache:
    async def test_list_is_cached_until_mutation(self, make_service):
        cache = TenantCache(ttl_seconds=300)
        service = make_service(cache=cache)
        await service.upload(TENANT, pdf_file("a.pdf"))

        first = await service.list_for_tenant(TENANT)
        summary = await service.summary(TENANT)
        assert len(first) == 1
        assert summary.total_files == 1
        assert await service.list_for_tenant(TENANT) is first

        await service.upload(TENANT, pdf_file("b.pdf"))
        assert len(cache) == 0
        assert len(await service.list_for_tenant(TENANT)) == 2
        assert (await service.summary(TENANT)).total_files == 2

    async def test_other_tenant_entries_survive(self, make_service):
        cache = TenantCache(ttl_seconds=300)
        service = make_service(cache=cache)
        await service.list_for_tenant(OTHER_TENANT)
        await service.upload(TENANT, pdf_file())
        assert cache.get(OTHER_TENANT, "list") == []


class TestTenantLocks:
    async def test_same_tenant_is_serialised(self):
        locks = TenantLocks()
        order: list[str] = []

        async def worker(name: str):
            async with locks.hold(TENANT):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_tenants_are_independent(self):
        locks = TenantLocks()
        assert locks.get(TENANT) is locks.get(TENANT)
        assert locks.get(TENANT) is not locks.get(OTHER_TENANT)
