"""Common schemas used across the API."""

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginationParams(BaseModel):
    """Pagination query parameters."""

    offset: int = Field(default=0, ge=0, description="Number of items to skip")
    limit: int = Field(default=20, ge=1, le=100, description="Number of items to return")


class PaginatedResponse(BaseModel, Generic[T]):
    """Paginated response wrapper."""

    items: list[T]
    total: int
    offset: int
    limit: int


class ErrorResponse(BaseModel):
    """Error body. ``code`` is a stable machine-readable reason."""

    detail: str
    code: str | None = None


class SuccessResponse(BaseModel):
    """Acknowledgement with a human-readable message."""

    success: bool = True
    message: str
