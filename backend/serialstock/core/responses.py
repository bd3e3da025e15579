"""SerialStock — API response envelope: {success, data, error, meta}."""
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Meta(BaseModel):
    """Pagination and metadata."""

    page: int = 1
    limit: int = 20
    total: int | None = None
    pages: int | None = None


class ApiResponse(BaseModel, Generic[T]):
    """Standard unified response envelope."""

    success: bool = True
    data: T | None = None
    error: dict[str, Any] | None = None
    meta: Meta | None = None


def error_response(code: str, message: str, field_errors: list[dict] | None = None, **extra: Any) -> dict:
    error = {"code": code, "message": message, "field_errors": field_errors or []}
    error.update({k: v for k, v in extra.items() if v is not None})
    return {"success": False, "data": None, "error": error, "meta": None}
