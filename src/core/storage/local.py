"""Filesystem blob store used in development and tests."""

import asyncio
from pathlib import Path

from src.core.storage.base import BlobNotFoundError, BlobStore, BlobStoreError


class LocalBlobStore(BlobStore):
    """Stores blobs as files below ``root``. File IO runs in a worker thread."""

    def __init__(self, root: str | Path, base_url: str, name: str = "local"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.name = name

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise BlobStoreError(f"Key escapes storage root: {key}", key=key)
        return path

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        if path.exists():
            raise BlobStoreError(f"Key already exists: {key}", key=key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise BlobStoreError(f"Could not write {key}: {exc}", key=key) from exc

    def _read(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Blob not found: {key}", key=key) from exc
        except OSError as exc:
            raise BlobStoreError(f"Could not read {key}: {exc}", key=key) from exc

    def _unlink_all(self, keys: list[str]) -> dict[str, str]:
        failures: dict[str, str] = {}
        for key in keys:
            try:
                self._path(key).unlink(missing_ok=True)
            except (OSError, BlobStoreError) as exc:
                failures[key] = str(exc)
        return failures

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        await asyncio.to_thread(self._write, key, data)

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._read, key)

    async def delete(self, keys: list[str]) -> dict[str, str]:
        return await asyncio.to_thread(self._unlink_all, keys)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(lambda: self._path(key).is_file())

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{self.name}/{key}"
