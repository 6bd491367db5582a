"""Merge flat rows into an owner's catalog.

Rows are grouped by kind and applied in dependency order: platforms,
statuses, play-with options and played statuses first, then views, then
games. Each catalog kind and the views commit as one transaction with a
savepoint per row; every game row commits on its own. A failing row is rolled
back, recorded in the result and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from catalogs.service import (
    OUTCOME_INSERTED,
    OUTCOME_UNCHANGED,
    OUTCOME_UPDATED,
    CatalogServiceError,
    ReferenceResolver,
    upsert_catalog_record,
)
from games.service import (
    GameServiceError,
    diff_game_values,
    find_game_by_name,
    get_play_with_ids,
    insert_game,
    replace_play_with,
    update_game,
)
from helpers import utc_now
from sync.errors import MissingReferenceError, SyncError
from sync.records import (
    CATALOG_TYPES,
    CatalogRecord,
    FlatRow,
    GameRecord,
    Record,
    RecordType,
    ViewRecord,
    decode_row,
)
from views.service import ViewServiceError, upsert_view

logger = logging.getLogger(__name__)

COUNTER_KEYS: dict[RecordType, str] = {
    RecordType.PLATFORM: "platforms",
    RecordType.STATUS: "statuses",
    RecordType.PLAY_WITH: "play_with",
    RecordType.PLAYED_STATUS: "played_statuses",
    RecordType.VIEW: "views",
    RecordType.GAME: "games",
}

# Driver bind failures (out-of-range integers and the like) surface as plain
# Python errors rather than SQLAlchemyError.
_ROW_ERRORS = (
    SQLAlchemyError,
    SyncError,
    CatalogServiceError,
    GameServiceError,
    ViewServiceError,
    OverflowError,
    ValueError,
    TypeError,
)


def _empty_counters() -> dict[str, int]:
    return {key: 0 for key in COUNTER_KEYS.values()}


@dataclass
class MergeResult:
    inserted: dict[str, int] = field(default_factory=_empty_counters)
    updated: dict[str, int] = field(default_factory=_empty_counters)
    errors: list[str] = field(default_factory=list)

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())

    @property
    def total_updated(self) -> int:
        return sum(self.updated.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": dict(self.inserted),
            "updated": dict(self.updated),
            "errors": list(self.errors),
        }


def _describe_error(exc: Exception) -> str:
    original = getattr(exc, "orig", None)
    return str(original if original is not None else exc)


class MergeEngine:
    """Apply decoded flat rows to one owner's catalog."""

    def __init__(
        self,
        engine: Engine,
        owner_id: str,
        *,
        now_factory: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._owner_id = owner_id
        self._now = now_factory

    def merge(self, rows: Sequence[FlatRow]) -> MergeResult:
        result = MergeResult()
        grouped = self._group_rows(rows, result)

        with self._engine.connect() as conn:
            for kind in CATALOG_TYPES:
                self._merge_batch(conn, kind, grouped[kind], result)
            self._merge_batch(conn, RecordType.VIEW, grouped[RecordType.VIEW], result)
            for _index, record in grouped[RecordType.GAME]:
                self._merge_game_row(conn, record, result)

        logger.info(
            "Merged %d rows for owner %s: %d inserted, %d updated, %d errors",
            len(rows),
            self._owner_id,
            result.total_inserted,
            result.total_updated,
            len(result.errors),
        )
        return result

    def _group_rows(
        self, rows: Iterable[Mapping[str, Any]], result: MergeResult
    ) -> dict[RecordType, list[tuple[int, Record]]]:
        grouped: dict[RecordType, list[tuple[int, Record]]] = {
            kind: [] for kind in RecordType
        }
        for index, row in enumerate(rows, start=1):
            record = decode_row(row)
            if record is None:
                result.errors.append(
                    f"Row {index}: unknown record type '{row.get('Type', '')}'"
                )
                continue
            if not record.name:
                result.errors.append(f"Row {index}: {record.kind.value} name is required")
                continue
            grouped[record.kind].append((index, record))
        return grouped

    def _apply(self, conn: Connection, record: Record) -> str:
        if isinstance(record, CatalogRecord):
            return upsert_catalog_record(conn, self._owner_id, record)
        if isinstance(record, ViewRecord):
            return upsert_view(conn, self._owner_id, record, now=self._now())
        raise TypeError(f"unsupported batch record: {record!r}")

    def _merge_batch(
        self,
        conn: Connection,
        kind: RecordType,
        items: Sequence[tuple[int, Record]],
        result: MergeResult,
    ) -> None:
        if not items:
            return
        key = COUNTER_KEYS[kind]
        inserted = updated = 0
        errors: list[str] = []
        try:
            with conn.begin():
                for _index, record in items:
                    try:
                        with conn.begin_nested():
                            outcome = self._apply(conn, record)
                    except _ROW_ERRORS as exc:
                        message = f"{kind.value} '{record.name}': {_describe_error(exc)}"
                        logger.warning("Import row failed: %s", message)
                        errors.append(message)
                        continue
                    if outcome == OUTCOME_INSERTED:
                        inserted += 1
                    elif outcome == OUTCOME_UPDATED:
                        updated += 1
        except SQLAlchemyError as exc:
            logger.exception("Failed to commit %s rows for owner %s", kind.value, self._owner_id)
            result.errors.extend(errors)
            result.errors.append(f"{kind.value}: batch failed: {_describe_error(exc)}")
            return
        result.inserted[key] += inserted
        result.updated[key] += updated
        result.errors.extend(errors)

    def _merge_game_row(
        self, conn: Connection, record: GameRecord, result: MergeResult
    ) -> None:
        try:
            with conn.begin():
                outcome = self._merge_game(conn, record)
        except _ROW_ERRORS as exc:
            message = f"Game '{record.name}': {_describe_error(exc)}"
            logger.warning("Import row failed: %s", message)
            result.errors.append(message)
            return
        if outcome == OUTCOME_INSERTED:
            result.inserted["games"] += 1
        elif outcome == OUTCOME_UPDATED:
            result.updated["games"] += 1

    def _merge_game(self, conn: Connection, record: GameRecord) -> str:
        resolver = ReferenceResolver(conn, self._owner_id)
        existing = find_game_by_name(conn, self._owner_id, record.name)

        status_id = resolver.status_id(record.status) if record.status else None
        if existing is None and status_id is None:
            raise MissingReferenceError("Status", record.status)

        values: dict[str, Any] = {
            "name": record.name,
            "platform_id": resolver.platform_id(record.platform) if record.platform else None,
            "played_status_id": (
                resolver.played_status_id(record.played_status)
                if record.played_status
                else None
            ),
            "released": record.released,
            "started": record.started,
            "finished": record.finished,
            "critic": record.critic,
            "critic_provider": record.critic_provider,
            "grade": record.grade,
            "completion": record.completion,
            "story": record.story,
            "comment": record.comment,
            "logo": record.logo,
            "cover": record.cover,
        }
        if status_id is not None:
            values["status_id"] = status_id
        elif record.status:
            logger.info(
                "Keeping current status of '%s'; '%s' is not a known status",
                record.name,
                record.status,
            )
        play_with_ids = resolver.play_with_ids(record.play_with)
        now = self._now()

        if existing is None:
            insert_game(conn, self._owner_id, record.name, values, play_with_ids, now=now)
            return OUTCOME_INSERTED

        changes = diff_game_values(existing, values)
        links_changed = set(get_play_with_ids(conn, existing["id"])) != set(play_with_ids)
        if not changes and not links_changed:
            return OUTCOME_UNCHANGED
        if links_changed:
            replace_play_with(conn, existing["id"], play_with_ids)
        update_game(conn, existing, changes, affects_metadata=True, now=now)
        return OUTCOME_UPDATED


def merge_rows(
    engine: Engine,
    owner_id: str,
    rows: Sequence[FlatRow],
    *,
    now_factory: Callable[[], datetime] = utc_now,
) -> MergeResult:
    """Convenience wrapper around :class:`MergeEngine`."""

    return MergeEngine(engine, owner_id, now_factory=now_factory).merge(rows)


__all__ = ["COUNTER_KEYS", "MergeEngine", "MergeResult", "merge_rows"]
