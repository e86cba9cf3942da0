import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.core.config import settings
from src.core.exceptions import AppException, MetadataError, StorageError
from src.shared.schemas import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str, errors: list[ErrorDetail] | None = None) -> JSONResponse:
    body = ErrorResponse(message=message, errors=errors or [ErrorDetail(message=message)])
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render AppException. Storage and metadata faults keep their cause out of the body."""
    if isinstance(exc, (StorageError, MetadataError)):
        logger.error(
            "%s %s: %s failed (%s)", request.method, request.url.path, exc.operation, exc.reason
        )
    elif exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.details)
    return _error(exc.status_code, exc.message, [ErrorDetail(field=exc.details.get("field"), message=exc.message)])


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query did not match the route's schema."""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append(ErrorDetail(field=".".join(loc) or None, message=error.get("msg", "Invalid value")))
    return _error(422, "Validation error", errors)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail) if exc.detail else "HTTP error")


async def sqlalchemy_db_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort for database errors that escaped the service layer."""
    logger.error("Unhandled database error on %s %s", request.method, request.url.path, exc_info=exc)
    raw = str(getattr(exc, "orig", exc))
    if "no such table" in raw.lower() or "does not exist" in raw.lower():
        message = "Attachment tables are missing. Run `alembic upgrade head` and try again."
    elif settings.debug:
        message = raw
    else:
        message = "Database error"
    return _error(500, message)
