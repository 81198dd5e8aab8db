"""Base SQLModel class with query-set manager support."""

from __future__ import annotations

from typing import ClassVar

from sqlmodel import SQLModel

from marketplace.db.queryset import ManagerDescriptor


class QueryModel(SQLModel, table=False):
    """SQLModel base exposing ``Model.objects`` query helpers."""

    objects: ClassVar[ManagerDescriptor] = ManagerDescriptor()
