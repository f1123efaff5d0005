"""Page-based listing for the leave endpoints."""

from __future__ import annotations

import math
from typing import Any, Generic, Mapping, Optional, Sequence, TypeVar

from fastapi import Query
from pydantic import BaseModel
from sqlalchemy import Select, func
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

T = TypeVar("T")


class PaginationParams:
    """Query parameters of a list endpoint, injected with ``Depends()``."""

    def __init__(
        self,
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        sort: Optional[str] = Query(
            default=None,
            description='Sort key, "-" prefix for descending (e.g. "-start_date")',
        ),
    ) -> None:
        self.page = page
        self.page_size = page_size
        self.sort = sort

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def sort_key(self) -> tuple[Optional[str], bool]:
        """``(name, descending)`` parsed from ``sort``."""
        if not self.sort:
            return None, False
        return self.sort.lstrip("-"), self.sort.startswith("-")


class PaginationMeta(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, params: PaginationParams, total: int) -> PaginationMeta:
        total_pages = math.ceil(total / params.page_size) if total else 0
        return cls(
            page=params.page,
            page_size=params.page_size,
            total=total,
            total_pages=total_pages,
            has_next=params.page < total_pages,
            has_prev=params.page > 1,
        )


class PaginatedResponse(BaseModel, Generic[T]):
    """``{"data": [...], "meta": {...}}``"""

    data: Sequence[T]
    meta: PaginationMeta


async def paginate(
    session: AsyncSession,
    query: Select,
    params: PaginationParams,
    *,
    sortable: Mapping[str, Any],
    options: Sequence[Any] = (),
) -> tuple[Sequence[Any], PaginationMeta]:
    """Run one page of *query* and count the full result.

    Only keys of *sortable* may be sorted on; any other ``sort`` value keeps
    the query's own ordering. Loader *options* apply to the page only.
    """
    name, descending = params.sort_key()
    column = sortable.get(name) if name else None
    if column is not None:
        query = query.order_by(None).order_by(
            column.desc() if descending else column.asc()
        )

    total: int = (
        await session.execute(
            query.with_only_columns(func.count(), maintain_column_froms=True).order_by(None)
        )
    ).scalar_one()
    rows = (
        await session.execute(
            query.options(*options).offset(params.offset).limit(params.page_size)
        )
    ).scalars().all()
    return rows, PaginationMeta.build(params, total)
