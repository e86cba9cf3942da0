"""S3/R2 blob store backed by aioboto3."""

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from src.core.storage.base import BlobNotFoundError, BlobStore, BlobStoreError

# S3 DeleteObjects accepts at most 1000 keys per request
_DELETE_BATCH = 1000

# ClientError is an S3 answer; BotoCoreError covers transport faults (connect, read timeout)
_S3_ERRORS = (ClientError, BotoCoreError)


def _error_code(exc: Exception) -> str | None:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


class S3BlobStore(BlobStore):
    """Stores blobs in one S3/R2 bucket."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        region: str = "auto",
    ):
        self.bucket = bucket
        self.name = bucket
        self.endpoint_url = endpoint_url.rstrip("/")
        self._access_key = access_key
        self._secret_key = secret_key
        self._region = region
        self._session = aioboto3.Session()

    def _client(self):
        return self._session.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self._access_key,
            aws_secret_access_key=self._secret_key,
            region_name=self._region,
        )

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            async with self._client() as s3:
                await s3.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except _S3_ERRORS as exc:
            raise BlobStoreError(f"Could not upload {key}: {exc}", key=key) from exc

    async def get(self, key: str) -> bytes:
        try:
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream:
                    return await stream.read()
        except _S3_ERRORS as exc:
            if _error_code(exc) in ("NoSuchKey", "404"):
                raise BlobNotFoundError(f"Blob not found: {key}", key=key) from exc
            raise BlobStoreError(f"Could not download {key}: {exc}", key=key) from exc

    async def delete(self, keys: list[str]) -> dict[str, str]:
        failures: dict[str, str] = {}
        if not keys:
            return failures
        try:
            async with self._client() as s3:
                for start in range(0, len(keys), _DELETE_BATCH):
                    batch = keys[start : start + _DELETE_BATCH]
                    try:
                        response = await s3.delete_objects(
                            Bucket=self.bucket,
                            Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                        )
                    except _S3_ERRORS as exc:
                        failures.update({k: str(exc) for k in batch})
                        continue
                    for error in response.get("Errors", []):
                        failures[error["Key"]] = error.get("Message") or error.get("Code", "unknown")
        except _S3_ERRORS as exc:
            raise BlobStoreError(f"Could not open S3 client for delete: {exc}") from exc
        return failures

    async def exists(self, key: str) -> bool:
        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=self.bucket, Key=key)
        except _S3_ERRORS as exc:
            if _error_code(exc) in ("NoSuchKey", "404", "NotFound"):
                return False
            raise BlobStoreError(f"Could not stat {key}: {exc}", key=key) from exc
        return True

    def public_url(self, key: str) -> str:
        return f"{self.endpoint_url}/{self.bucket}/{key}"
