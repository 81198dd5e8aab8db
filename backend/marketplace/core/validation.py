"""Composable input validation returning tagged results.

Validators never raise. Each returns either ``Valid(value)`` carrying the
normalized value or ``Invalid(message, field)``. Callers combine named results with
:func:`collect` and convert to an exception only at the API boundary
with :func:`unwrap`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar, Union

from marketplace.core.errors import ValidationError
from marketplace.core.time import to_naive_utc

T = TypeVar("T")


@dataclass(frozen=True)
class Valid(Generic[T]):
    value: T


@dataclass(frozen=True)
class Invalid:
    message: str
    field: str | None = None


Result = Union[Valid[T], Invalid]


def collect(results: Mapping[str, Result[Any]]) -> Result[dict[str, Any]]:
    """Combine named results into one; the first invalid entry wins."""
    values: dict[str, Any] = {}
    for name, result in results.items():
        if isinstance(result, Invalid):
            return result
        values[name] = result.value
    return Valid(values)


def unwrap(result: Result[T]) -> T:
    """Return the validated value or raise ``ValidationError`` for reporting."""
    if isinstance(result, Invalid):
        details = {"field": result.field} if result.field else None
        raise ValidationError(result.message, details)
    return result.value


def required_text(value: object, field: str, *, max_length: int) -> Result[str]:
    if not isinstance(value, str):
        return Invalid(f"{field} must be a string.", field)
    normalized = value.strip()
    if not normalized:
        return Invalid(f"{field} is required.", field)
    if len(normalized) > max_length:
        return Invalid(f"{field} must be at most {max_length} characters.", field)
    return Valid(normalized)


def positive_decimal(value: object, field: str) -> Result[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (Decimal, int, float, str)):
        return Invalid(f"{field} must be a number.", field)
    try:
        parsed = Decimal(str(value).strip())
    except ArithmeticError:
        return Invalid(f"{field} must be a number.", field)
    if not parsed.is_finite():
        return Invalid(f"{field} must be a number.", field)
    if parsed <= 0:
        return Invalid(f"{field} must be greater than 0.", field)
    return Valid(parsed)


def positive_int(value: object, field: str) -> Result[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return Invalid(f"{field} must be an integer.", field)
    if value <= 0:
        return Invalid(f"{field} must be greater than 0.", field)
    return Valid(value)


def optional_deadline(value: object, field: str = "deadline_at") -> Result[datetime | None]:
    if value is None:
        return Valid(None)
    if not isinstance(value, datetime):
        return Invalid(f"{field} must be a valid ISO date string or null.", field)
    return Valid(to_naive_utc(value))


def tag_list(
    value: object,
    *,
    max_items: int,
    max_length: int,
    field: str = "tags",
) -> Result[list[str]]:
    if value is None:
        return Valid([])
    if not isinstance(value, list):
        return Invalid(f"{field} must be an array of strings.", field)
    tags: list[str] = []
    for index, item in enumerate(value):
        item_field = f"{field}[{index}]"
        if not isinstance(item, str):
            return Invalid(f"{item_field} must be a string.", item_field)
        normalized = item.strip()
        if not normalized:
            return Invalid(f"{item_field} cannot be empty.", item_field)
        if len(normalized) > max_length:
            return Invalid(f"{item_field} must be at most {max_length} characters.", item_field)
        tags.append(normalized)
    if len(tags) > max_items:
        return Invalid(f"{field} must contain at most {max_items} items.", field)
    return Valid(tags)


def page_number(value: int | None) -> Result[int]:
    if value is None:
        return Valid(1)
    if value <= 0:
        return Invalid("page must be a positive integer.", "page")
    return Valid(value)


def page_limit(value: int | None, *, default: int, maximum: int) -> Result[int]:
    if value is None:
        return Valid(default)
    if value <= 0:
        return Invalid("limit must be a positive integer.", "limit")
    if value > maximum:
        return Invalid(f"limit must be at most {maximum}.", "limit")
    return Valid(value)


def optional_text(value: str | None) -> str | None:
    """Trim free-text query input, treating blank strings as absent."""
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None
