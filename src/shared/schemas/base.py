"""Response envelopes shared by every router."""
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class BaseSchema(BaseModel):
    """Reads ORM rows directly (from_attributes)."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ErrorDetail(BaseSchema):
    field: str | None = None
    message: str


class ApiResponse(BaseSchema, Generic[T]):
    """Envelope for successful responses: ``{success, data, message}``."""

    success: bool = True
    data: T
    message: str | None = None


SuccessResponse = ApiResponse


class ErrorResponse(BaseSchema):
    """Envelope for failures; ``errors`` names the offending field where known."""

    success: bool = False
    data: None = None
    message: str
    errors: list[ErrorDetail] = []


class PaginatedResponse(BaseSchema, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def create(cls, items: list[T], total: int, page: int, limit: int) -> "PaginatedResponse[T]":
        return cls(items=items, total=total, page=page, limit=limit, pages=-(-total // limit) if limit else 0)
