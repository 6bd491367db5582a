"""Saved view persistence helpers.

A view's filter and sort configuration is stored as an opaque JSON blob; this
module copies it verbatim and never interprets it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import func, insert, select, update as sa_update
from sqlalchemy.engine import Connection, RowMapping

from db.schema import DEFAULT_VIEW_SORT_ORDER, views
from helpers import _normalize_lookup_name, utc_now
from sync.records import ViewRecord

OUTCOME_INSERTED = "inserted"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"


class ViewServiceError(RuntimeError):
    """Raised when a view cannot be written."""


def find_view_by_name(conn: Connection, owner_id: str, raw_name: Any) -> RowMapping | None:
    name = _normalize_lookup_name(raw_name)
    if not name:
        return None
    return (
        conn.execute(
            select(views).where(
                views.c.owner_id == owner_id,
                func.lower(views.c.name) == name.lower(),
            )
        )
        .mappings()
        .first()
    )


def _optional_text(value: str) -> str | None:
    return value if value else None


def upsert_view(
    conn: Connection,
    owner_id: str,
    record: ViewRecord,
    *,
    now: datetime | None = None,
) -> str:
    """Insert or overwrite the owner's view named ``record.name``."""

    name = _normalize_lookup_name(record.name)
    if not name:
        raise ViewServiceError("name is required")
    timestamp = now or utc_now()
    values: dict[str, Any] = {
        "name": name,
        "description": _optional_text(record.description),
        "filters_json": record.filters_json or "",
        "sorting_json": _optional_text(record.sorting_json),
        "is_public": bool(record.is_public),
        "created_by": _optional_text(record.created_by),
    }
    if record.sort_order > 0:
        values["sort_order"] = record.sort_order

    existing = find_view_by_name(conn, owner_id, name)
    if existing is None:
        values.setdefault("sort_order", DEFAULT_VIEW_SORT_ORDER)
        conn.execute(
            insert(views).values(
                owner_id=owner_id,
                modified_since_export=True,
                created_at=timestamp,
                updated_at=timestamp,
                **values,
            )
        )
        return OUTCOME_INSERTED

    changes = {key: value for key, value in values.items() if existing.get(key) != value}
    if not changes:
        return OUTCOME_UNCHANGED
    changes.update(modified_since_export=True, updated_at=timestamp)
    conn.execute(sa_update(views).where(views.c.id == existing["id"]).values(**changes))
    return OUTCOME_UPDATED


def view_record_from_row(row: Mapping[str, Any]) -> ViewRecord:
    return ViewRecord(
        name=row["name"],
        description=row.get("description") or "",
        filters_json=row.get("filters_json") or "",
        sorting_json=row.get("sorting_json") or "",
        sort_order=int(row.get("sort_order") or DEFAULT_VIEW_SORT_ORDER),
        is_public=bool(row.get("is_public")),
        created_by=row.get("created_by") or "",
    )


def list_view_rows(conn: Connection, owner_id: str) -> list[RowMapping]:
    return list(
        conn.execute(
            select(views)
            .where(views.c.owner_id == owner_id)
            .order_by(views.c.sort_order, func.lower(views.c.name), views.c.id)
        ).mappings()
    )


def list_view_records(conn: Connection, owner_id: str) -> list[ViewRecord]:
    return [view_record_from_row(row) for row in list_view_rows(conn, owner_id)]


__all__ = [
    "ViewServiceError",
    "find_view_by_name",
    "list_view_records",
    "list_view_rows",
    "upsert_view",
    "view_record_from_row",
]
