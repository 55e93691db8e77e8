"""Base schema classes and generic types."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class BaseResponse(BaseModel):
    """Base for response schemas built from ORM objects."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ListResponse(BaseModel, Generic[T]):  # noqa: UP046
    """Generic list response with item count."""

    items: list[T]
    total: int  # Total matching the query (may exceed len(items))
