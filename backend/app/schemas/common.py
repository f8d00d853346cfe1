"""Shared response envelopes."""

from typing import Generic, TypeVar
from pydantic import BaseModel

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """One page of an offset-paginated listing.

    `total` counts every row matching the filters, not just this page:
        response_model=PaginatedResponse[BatchOut]
        -> {"items": [...], "total": 150, "limit": 50, "offset": 100}
    """
    items: list[T]
    total: int
    limit: int
    offset: int
