from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    FileTypeNotAllowedError,
    FileTooLargeError,
    QuotaExceededError,
    TooManyFilesError,
    AuthorizationError,
    StorageError,
    MetadataError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "FileTypeNotAllowedError",
    "FileTooLargeError",
    "QuotaExceededError",
    "TooManyFilesError",
    "AuthorizationError",
    "StorageError",
    "MetadataError",
]
