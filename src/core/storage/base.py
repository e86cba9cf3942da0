"""Blob store interface shared by the local and S3/R2 backends."""

from abc import ABC, abstractmethod


class BlobStoreError(Exception):
    """A blob store operation failed."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class BlobNotFoundError(BlobStoreError):
    """Requested key does not exist in the store."""


class BlobStore(ABC):
    """Raw byte storage for one area (temporary or permanent)."""

    name: str = "blob"

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Write bytes under key. Existing keys are not overwritten."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read bytes for key. Raises BlobNotFoundError when missing."""

    @abstractmethod
    async def delete(self, keys: list[str]) -> dict[str, str]:
        """Delete keys in one batch.

        Missing keys count as deleted. Returns {key: reason} for keys that
        could not be removed.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def public_url(self, key: str) -> str:
        ...
