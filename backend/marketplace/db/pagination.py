"""Offset pagination over query sets."""

from __future__ import annotations

from dataclasses import dataclass
from math import ceil
from typing import TYPE_CHECKING, Generic, TypeVar

from sqlmodel import SQLModel

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.db.queryset import QuerySet

ModelT = TypeVar("ModelT", bound=SQLModel)


class PaginationRead(SQLModel):
    """Pagination block returned alongside list payloads."""

    page: int
    limit: int
    total: int
    total_pages: int


@dataclass(frozen=True)
class Page(Generic[ModelT]):
    items: list[ModelT]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return 0 if self.total == 0 else ceil(self.total / self.limit)

    def pagination(self) -> PaginationRead:
        return PaginationRead(
            page=self.page,
            limit=self.limit,
            total=self.total,
            total_pages=self.total_pages,
        )


async def paginate(
    session: AsyncSession,
    query: QuerySet[ModelT],
    *,
    page: int,
    limit: int,
) -> Page[ModelT]:
    """Count the full query, then fetch one page of it."""
    total = await query.count(session)
    items = await query.offset((page - 1) * limit).limit(limit).all(session)
    return Page(items=items, page=page, limit=limit, total=total)
