from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Validation error. Messages are user-facing."""

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        merged = dict(details or {})
        if field:
            merged["field"] = field
        super().__init__(message=message, status_code=422, details=merged)


class FileTypeNotAllowedError(ValidationError):
    """MIME type outside the allow-list."""

    def __init__(self, file_name: str, mime_type: str):
        super().__init__(
            f'File type "{mime_type}" is not allowed for "{file_name}"',
            field="mime_type",
            details={"file_name": file_name, "mime_type": mime_type},
        )


class FileTooLargeError(ValidationError):
    """File exceeds the per-file size limit."""

    def __init__(self, file_name: str, size_bytes: int, limit_bytes: int):
        super().__init__(
            f'File "{file_name}" exceeds the maximum size of {limit_bytes // (1024 * 1024)} MB',
            field="size_bytes",
            details={"file_name": file_name, "size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )


class QuotaExceededError(ValidationError):
    """Upload would push the tenant over its aggregate limit."""

    def __init__(self, tenant_id: str, used_bytes: int, requested_bytes: int, limit_bytes: int):
        super().__init__(
            f"Total attachment limit of {limit_bytes // (1024 * 1024)} MB per company would be exceeded",
            field="size_bytes",
            details={
                "tenant_id": tenant_id,
                "used_bytes": used_bytes,
                "requested_bytes": requested_bytes,
                "limit_bytes": limit_bytes,
            },
        )


class TooManyFilesError(ValidationError):
    """Upload would push the tenant over its maximum file count."""

    def __init__(self, tenant_id: str, current_count: int, requested_count: int, max_files: int):
        super().__init__(
            f"A company may keep at most {max_files} pending attachments",
            field="files",
            details={
                "tenant_id": tenant_id,
                "current_count": current_count,
                "requested_count": requested_count,
                "max_files": max_files,
            },
        )


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403)


class StorageError(AppException):
    """Blob store operation failed or timed out."""

    def __init__(self, operation: str, reason: str | None = None):
        self.operation = operation
        self.reason = reason
        super().__init__(
            message="File storage is temporarily unavailable, please try again",
            status_code=502,
            details={"operation": operation, "reason": reason},
        )


class MetadataError(AppException):
    """Metadata store operation failed or timed out."""

    def __init__(self, operation: str, reason: str | None = None):
        self.operation = operation
        self.reason = reason
        super().__init__(
            message="Could not save attachment information, please try again",
            status_code=500,
            details={"operation": operation, "reason": reason},
        )
