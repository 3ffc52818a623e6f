"""Shared service utilities: UUID coercion, timestamps, metadata, ordering, pagination."""
from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, TypeVar

from fastapi import HTTPException
from sqlalchemy import Select

E = TypeVar("E", bound=enum.Enum)


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid id") from exc


def as_utc(value: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware (UTC). SQLite doesn't preserve tz info."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def merge_metadata(existing: dict | None, incoming: dict | None) -> dict | None:
    """Shallow-merge incoming keys over existing ones; keys never disappear."""
    if incoming is None:
        return existing
    merged = dict(existing or {})
    merged.update(incoming)
    return merged


def validate_enum(value: str, enum_cls: type[E], field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_cls)
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {field}. Allowed: {allowed}",
        ) from exc


def apply_ordering(
    query: Select[Any],
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Select[Any]:
    """Apply ordering to a select statement with validation."""
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Select[Any], limit: int, offset: int) -> Select[Any]:
    """Apply limit/offset to a select statement."""
    return query.limit(limit).offset(offset)
