from pathlib import Path

from src.core.config import Settings, settings as default_settings
from src.core.storage.base import BlobNotFoundError, BlobStore, BlobStoreError
from src.core.storage.local import LocalBlobStore

TEMP_AREA = "temp"
PERMANENT_AREA = "permanent"


def build_blob_stores(settings: Settings = default_settings) -> tuple[BlobStore, BlobStore]:
    """Return (temporary, permanent) stores for the configured backend."""
    if settings.use_s3:
        from src.core.storage.s3 import S3BlobStore

        common = dict(
            endpoint_url=settings.s3_endpoint_url,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
        )
        return (
            S3BlobStore(settings.s3_temp_bucket, **common),
            S3BlobStore(settings.s3_permanent_bucket, **common),
        )
    root = Path(settings.storage_path)
    return (
        LocalBlobStore(root / TEMP_AREA, settings.public_base_url, name=TEMP_AREA),
        LocalBlobStore(root / PERMANENT_AREA, settings.public_base_url, name=PERMANENT_AREA),
    )


__all__ = [
    "BlobNotFoundError",
    "BlobStore",
    "BlobStoreError",
    "LocalBlobStore",
    "build_blob_stores",
    "TEMP_AREA",
    "PERMANENT_AREA",
]
