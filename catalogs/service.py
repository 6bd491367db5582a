"""Catalog persistence and name-based reference resolution.

Catalog items (platforms, statuses, play-with options and played statuses) are
identified by their case-insensitive name within an owner's catalog. All
lookups run against the live connection so items inserted earlier in the same
import are visible to later rows.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import Table, and_, func, insert, select, update as sa_update
from sqlalchemy.engine import Connection, RowMapping

from db.schema import CATALOG_TABLES, DEFAULT_COLOR, statuses
from helpers import _dedupe_preserve_order, _normalize_lookup_name
from sync.records import CatalogRecord, RecordType, SpecialStatusType

logger = logging.getLogger(__name__)


class CatalogServiceError(RuntimeError):
    """Base class for catalog service errors."""


class CatalogConflictError(CatalogServiceError):
    """Raised when a write would break a catalog uniqueness rule."""


class CatalogNotFoundError(CatalogServiceError):
    """Raised when a catalog entry cannot be located."""


OUTCOME_INSERTED = "inserted"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"


def catalog_table(kind: RecordType | str) -> Table:
    """Return the table backing the catalog ``kind``."""

    key = kind.value if isinstance(kind, RecordType) else str(kind)
    try:
        return CATALOG_TABLES[key]
    except KeyError:
        raise CatalogNotFoundError(f"unknown catalog kind: {key}") from None


def _name_matches(table: Table, name: str):
    return func.lower(table.c.name) == name.lower()


def find_catalog_item(
    conn: Connection, table: Table, owner_id: str, raw_name: Any
) -> RowMapping | None:
    """Return the owner's row in ``table`` whose name matches ``raw_name``."""

    name = _normalize_lookup_name(raw_name)
    if not name:
        return None
    return (
        conn.execute(
            select(table).where(
                table.c.owner_id == owner_id, _name_matches(table, name)
            )
        )
        .mappings()
        .first()
    )


def find_default_status(
    conn: Connection, owner_id: str, status_type: SpecialStatusType
) -> RowMapping | None:
    """Return the owner's default status for ``status_type`` when one exists."""

    return (
        conn.execute(
            select(statuses).where(
                statuses.c.owner_id == owner_id,
                statuses.c.status_type == status_type.value,
                statuses.c.is_default.is_(True),
            )
        )
        .mappings()
        .first()
    )


def next_sort_order(conn: Connection, table: Table, owner_id: str) -> int:
    """Return the next position at the end of the owner's dense sort sequence."""

    current = conn.execute(
        select(func.max(table.c.sort_order)).where(table.c.owner_id == owner_id)
    ).scalar()
    return int(current or 0) + 1


def _ensure_single_default(
    conn: Connection,
    owner_id: str,
    status_type: SpecialStatusType,
    *,
    exclude_id: int | None,
) -> None:
    existing = find_default_status(conn, owner_id, status_type)
    if existing is not None and existing["id"] != exclude_id:
        raise CatalogConflictError(
            f"a default {status_type.value} status already exists: "
            f"'{existing['name']}'"
        )


def _match_catalog_record(
    conn: Connection, table: Table, owner_id: str, record: CatalogRecord
) -> RowMapping | None:
    if (
        record.kind is RecordType.STATUS
        and record.status_type is not SpecialStatusType.NONE
        and record.is_default
    ):
        by_role = find_default_status(conn, owner_id, record.status_type)
        if by_role is not None:
            return by_role
    return find_catalog_item(conn, table, owner_id, record.name)


def upsert_catalog_record(
    conn: Connection, owner_id: str, record: CatalogRecord
) -> str:
    """Insert or update ``record`` in the owner's catalog.

    Returns one of ``"inserted"``, ``"updated"`` or ``"unchanged"``. A sort
    position of zero or less means "unspecified": new rows are appended to the
    end of the sequence and existing rows keep their position.
    """

    table = catalog_table(record.kind)
    name = _normalize_lookup_name(record.name)
    if not name:
        raise CatalogServiceError("name is required")

    existing = _match_catalog_record(conn, table, owner_id, record)
    values: dict[str, Any] = {
        "color": record.color or DEFAULT_COLOR,
        "is_active": bool(record.is_active),
    }
    if record.sort_order > 0:
        values["sort_order"] = record.sort_order
    if record.kind is RecordType.STATUS:
        values["status_type"] = record.status_type.value
        values["is_default"] = bool(record.is_default)

    if existing is None:
        if values.get("is_default") and record.status_type is not SpecialStatusType.NONE:
            _ensure_single_default(conn, owner_id, record.status_type, exclude_id=None)
        values.setdefault("sort_order", next_sort_order(conn, table, owner_id))
        conn.execute(insert(table).values(owner_id=owner_id, name=name, **values))
        return OUTCOME_INSERTED

    # Role-matched statuses may be renamed by the import.
    if existing["name"] != name:
        values["name"] = name
    changes = {
        key: value for key, value in values.items() if existing.get(key) != value
    }
    if not changes:
        return OUTCOME_UNCHANGED
    if (
        changes.get("is_default")
        and record.status_type is not SpecialStatusType.NONE
    ):
        _ensure_single_default(
            conn, owner_id, record.status_type, exclude_id=existing["id"]
        )
    conn.execute(sa_update(table).where(table.c.id == existing["id"]).values(**changes))
    return OUTCOME_UPDATED


def list_catalog_records(
    conn: Connection, kind: RecordType, owner_id: str
) -> list[CatalogRecord]:
    """Return the owner's catalog rows ordered by sort position then name."""

    table = catalog_table(kind)
    rows = conn.execute(
        select(table)
        .where(table.c.owner_id == owner_id)
        .order_by(table.c.sort_order, func.lower(table.c.name), table.c.id)
    ).mappings()
    return [catalog_record_from_row(kind, row) for row in rows]


def catalog_record_from_row(kind: RecordType, row: Mapping[str, Any]) -> CatalogRecord:
    record = CatalogRecord(
        kind=kind,
        name=row["name"],
        color=row.get("color") or DEFAULT_COLOR,
        is_active=bool(row.get("is_active")),
        sort_order=int(row.get("sort_order") or 0),
    )
    if kind is RecordType.STATUS:
        record.status_type = SpecialStatusType.parse(row.get("status_type"))
        record.is_default = bool(row.get("is_default"))
    return record


def catalog_names_by_id(conn: Connection, table: Table, owner_id: str) -> dict[int, str]:
    rows = conn.execute(
        select(table.c.id, table.c.name).where(table.c.owner_id == owner_id)
    )
    return {row.id: row.name for row in rows}


def reorder_catalog(
    conn: Connection, kind: RecordType, owner_id: str, ordered_ids: Sequence[int]
) -> list[int]:
    """Renumber the owner's catalog so ``ordered_ids`` come first, from 1.

    Items not listed keep their relative order after the listed ones, so the
    sequence stays dense.
    """

    table = catalog_table(kind)
    current = [
        row.id
        for row in conn.execute(
            select(table.c.id)
            .where(table.c.owner_id == owner_id)
            .order_by(table.c.sort_order, table.c.id)
        )
    ]
    known = set(current)
    unknown = [item for item in ordered_ids if item not in known]
    if unknown:
        raise CatalogNotFoundError(f"unknown {kind.value} ids: {unknown}")

    listed: list[int] = []
    for item in ordered_ids:
        if item not in listed:
            listed.append(item)
    final_order = listed + [item for item in current if item not in listed]
    for position, item_id in enumerate(final_order, start=1):
        conn.execute(
            sa_update(table)
            .where(and_(table.c.id == item_id, table.c.owner_id == owner_id))
            .values(sort_order=position)
        )
    return final_order


class ReferenceResolver:
    """Resolve catalog names to identifiers within one owner's catalogs."""

    def __init__(self, conn: Connection, owner_id: str) -> None:
        self._conn = conn
        self._owner_id = owner_id

    def _resolve(self, kind: RecordType, raw_name: Any) -> int | None:
        row = find_catalog_item(self._conn, catalog_table(kind), self._owner_id, raw_name)
        if row is None:
            return None
        return int(row["id"])

    def status_id(self, name: Any) -> int | None:
        return self._resolve(RecordType.STATUS, name)

    def platform_id(self, name: Any) -> int | None:
        return self._resolve(RecordType.PLATFORM, name)

    def played_status_id(self, name: Any) -> int | None:
        return self._resolve(RecordType.PLAYED_STATUS, name)

    def play_with_ids(self, names: Iterable[Any]) -> list[int]:
        """Return identifiers for every resolvable name, dropping the rest."""

        resolved: list[int] = []
        for name in _dedupe_preserve_order(
            _normalize_lookup_name(value) for value in names
        ):
            lookup_id = self._resolve(RecordType.PLAY_WITH, name)
            if lookup_id is None:
                logger.debug("Dropping unknown play-with option %r", name)
                continue
            if lookup_id not in resolved:
                resolved.append(lookup_id)
        return resolved


__all__ = [
    "CatalogConflictError",
    "CatalogNotFoundError",
    "CatalogServiceError",
    "OUTCOME_INSERTED",
    "OUTCOME_UNCHANGED",
    "OUTCOME_UPDATED",
    "ReferenceResolver",
    "catalog_names_by_id",
    "catalog_record_from_row",
    "catalog_table",
    "find_catalog_item",
    "find_default_status",
    "list_catalog_records",
    "next_sort_order",
    "reorder_catalog",
    "upsert_catalog_record",
]
