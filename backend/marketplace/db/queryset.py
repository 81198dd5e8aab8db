"""Chainable query helpers exposed as ``Model.objects`` on table models."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import func
from sqlmodel import SQLModel, col, select

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

ModelT = TypeVar("ModelT", bound=SQLModel)


@dataclass(frozen=True)
class QuerySet(Generic[ModelT]):
    """Immutable select builder bound to one model class."""

    model: type[ModelT]
    statement: SelectOfScalar[ModelT]

    def filter(self, *criteria: ColumnElement[bool] | bool) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.where(*criteria))

    def by_id(self, obj_id: object) -> QuerySet[ModelT]:
        return self.filter(col(getattr(self.model, "id")) == obj_id)

    def order_by(self, *clauses: Any) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.order_by(*clauses))

    def limit(self, value: int) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.limit(value))

    def offset(self, value: int) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.offset(value))

    def for_update(self) -> QuerySet[ModelT]:
        """Lock selected rows until commit and refresh any already-loaded instances."""
        statement = self.statement.with_for_update().execution_options(populate_existing=True)
        return replace(self, statement=statement)

    async def first(self, session: AsyncSession) -> ModelT | None:
        return (await session.exec(self.statement)).first()

    async def all(self, session: AsyncSession) -> list[ModelT]:
        return list(await session.exec(self.statement))

    async def count(self, session: AsyncSession) -> int:
        statement = select(func.count()).select_from(
            self.statement.order_by(None).subquery(),
        )
        return int((await session.exec(statement)).one())

    async def exists(self, session: AsyncSession) -> bool:
        return await self.limit(1).first(session) is not None


class ManagerDescriptor:
    """Class-level descriptor returning a fresh ``QuerySet`` per access."""

    def __get__(self, instance: object, owner: type[ModelT]) -> QuerySet[ModelT]:
        return QuerySet(model=owner, statement=select(owner))
