"""Tests for the local filesystem and S3 blob stores."""

import asyncio
import time
from pathlib import Path

import pytest
from botocore.exceptions import EndpointConnectionError, ReadTimeoutError

from src.core.config import Settings
from src.core.storage import PERMANENT_AREA, TEMP_AREA, LocalBlobStore, build_blob_stores
from src.core.storage.base import BlobNotFoundError, BlobStoreError
from src.core.storage.s3 import S3BlobStore


@pytest.fixture
def store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs", "http://files.test/", name="temp")


class TestLocalBlobStore:
    async def test_put_get_exists(self, store):
        await store.put("tenant/2026-03/a.pdf", b"data", "application/pdf")
        assert await store.get("tenant/2026-03/a.pdf") == b"data"
        assert await store.exists("tenant/2026-03/a.pdf") is True
        assert await store.exists("tenant/2026-03/b.pdf") is False

    async def test_put_does_not_overwrite(self, store):
        await store.put("k.pdf", b"one")
        with pytest.raises(BlobStoreError):
            await store.put("k.pdf", b"two")
        assert await store.get("k.pdf") == b"one"

    async def test_get_missing(self, store):
        with pytest.raises(BlobNotFoundError):
            await store.get("missing.pdf")

    async def test_delete_batch_tolerates_missing(self, store):
        await store.put("a.pdf", b"a")
        assert await store.delete(["a.pdf", "never-there.pdf"]) == {}
        assert await store.exists("a.pdf") is False

    async def test_keys_cannot_escape_root(self, store):
        with pytest.raises(BlobStoreError):
            await store.put("../outside.pdf", b"x")
        failures = await store.delete(["../outside.pdf"])
        assert "../outside.pdf" in failures

    def test_public_url(self, store):
        assert store.public_url("t/a.pdf") == "http://files.test/temp/t/a.pdf"

    async def test_file_io_does_not_block_the_event_loop(self, store, monkeypatch):
        write_bytes = Path.write_bytes

        def slow_write(path, data):
            time.sleep(0.3)
            return write_bytes(path, data)

        monkeypatch.setattr(Path, "write_bytes", slow_write)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(store.put("t/slow.pdf", b"data"), 0.05)


class TestBuildBlobStores:
    def test_local_areas(self, tmp_path):
        temp, permanent = build_blob_stores(Settings(storage_path=str(tmp_path)))
        assert isinstance(temp, LocalBlobStore)
        assert temp.root == tmp_path / TEMP_AREA
        assert permanent.root == tmp_path / PERMANENT_AREA

    def test_s3_when_configured(self):
        settings = Settings(
            s3_endpoint_url="https://r2.example.com",
            s3_access_key="key",
            s3_secret_key="secret",
        )
        temp, permanent = build_blob_stores(settings)
        assert temp.bucket == "anexos-temporarios"
        assert permanent.bucket == "anexos-permanentes"
        assert temp.public_url("t/a.pdf") == "https://r2.example.com/anexos-temporarios/t/a.pdf"


class _UnreachableClient:
    async def __aenter__(self):
        raise EndpointConnectionError(endpoint_url="https://r2.example.com")

    async def __aexit__(self, *exc_info):
        return False


class _TimingOutClient:
    """Client that connects but whose every call times out."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def _timeout(self, **kwargs):
        raise ReadTimeoutError(endpoint_url="https://r2.example.com")

    put_object = get_object = delete_objects = head_object = _timeout


@pytest.fixture
def s3_store() -> S3BlobStore:
    return S3BlobStore("anexos-temporarios", "https://r2.example.com", "key", "secret")


class TestS3TransportErrors:
    """Transport faults surface as BlobStoreError like S3 error responses do."""

    @pytest.mark.parametrize("client", [_UnreachableClient, _TimingOutClient])
    async def test_put_get_exists(self, s3_store, monkeypatch, client):
        monkeypatch.setattr(s3_store, "_client", client)

        with pytest.raises(BlobStoreError):
            await s3_store.put("t/a.pdf", b"data")
        with pytest.raises(BlobStoreError) as exc_info:
            await s3_store.get("t/a.pdf")
        assert not isinstance(exc_info.value, BlobNotFoundError)
        with pytest.raises(BlobStoreError):
            await s3_store.exists("t/a.pdf")

    async def test_delete_batch_timeout_reports_every_key(self, s3_store, monkeypatch):
        monkeypatch.setattr(s3_store, "_client", _TimingOutClient)

        failures = await s3_store.delete(["t/a.pdf", "t/b.pdf"])

        assert set(failures) == {"t/a.pdf", "t/b.pdf"}

    async def test_delete_without_connection_raises_store_error(self, s3_store, monkeypatch):
        monkeypatch.setattr(s3_store, "_client", _UnreachableClient)

        with pytest.raises(BlobStoreError):
            await s3_store.delete(["t/a.pdf"])
