from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorDetail(BaseModel):
    code: str
    message: str

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    error: ErrorDetail


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    limit: int = Field(ge=1, le=500)
    offset: int = Field(ge=0)
    total: int = Field(ge=0)


def paginate(items: list[Any], *, limit: int, offset: int) -> dict[str, Any]:
    return {"items": items[offset : offset + limit], "limit": limit, "offset": offset, "total": len(items)}
