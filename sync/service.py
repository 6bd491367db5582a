"""Flat-file export and import operations for one owner's catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

import config
from catalogs.service import catalog_names_by_id, list_catalog_records
from db.schema import games, platforms, played_statuses, statuses
from games.service import game_record_from_row, play_with_names_by_game
from helpers import utc_now
from sync.errors import SyncError
from sync.merge import MergeEngine, MergeResult
from sync.records import (
    CATALOG_TYPES,
    CatalogRecord,
    FlatRow,
    GameRecord,
    Record,
    RecordType,
    encode_record,
    read_flat_file,
    write_flat_file,
)
from sync.selective import (
    ExportConfig,
    ImportConfig,
    apply_export_config,
    apply_import_config,
)
from views.service import list_view_records

logger = logging.getLogger(__name__)


@dataclass
class SelectiveImportResult:
    inserted: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Imported {self.inserted} new games and updated {self.updated} existing games"
            + (f" with {len(self.errors)} errors" if self.errors else "")
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "inserted": self.inserted,
            "updated": self.updated,
            "errors": list(self.errors),
        }


def _delimiter(value: str | None) -> str:
    return value or config.FLAT_FILE_DELIMITER


def _encoding(value: str | None) -> str:
    return value or config.FLAT_FILE_ENCODING


def load_catalog_records(conn: Connection, owner_id: str) -> list[CatalogRecord]:
    records: list[CatalogRecord] = []
    for kind in CATALOG_TYPES:
        records.extend(list_catalog_records(conn, kind, owner_id))
    return records


def load_game_records(
    conn: Connection,
    owner_id: str,
    game_ids: Iterable[int] | None = None,
) -> list[tuple[int, GameRecord]]:
    """Return ``(id, record)`` pairs for the owner's games ordered by name."""

    query = (
        select(games)
        .where(games.c.owner_id == owner_id)
        .order_by(func.lower(games.c.name), games.c.id)
    )
    id_list: list[int] | None = None
    if game_ids is not None:
        id_list = list(dict.fromkeys(game_ids))
        if not id_list:
            return []
        query = query.where(games.c.id.in_(id_list))

    rows = list(conn.execute(query).mappings())
    status_names = catalog_names_by_id(conn, statuses, owner_id)
    platform_names = catalog_names_by_id(conn, platforms, owner_id)
    played_names = catalog_names_by_id(conn, played_statuses, owner_id)
    play_with_names = play_with_names_by_game(conn, owner_id, id_list)
    return [
        (
            row["id"],
            game_record_from_row(
                row,
                status_names=status_names,
                platform_names=platform_names,
                played_status_names=played_names,
                play_with_names=play_with_names.get(row["id"], ()),
            ),
        )
        for row in rows
    ]


def collect_export_records(conn: Connection, owner_id: str) -> list[Record]:
    """Return every catalog, view and game record of the owner in export order."""

    records: list[Record] = list(load_catalog_records(conn, owner_id))
    records.extend(list_view_records(conn, owner_id))
    records.extend(record for _game_id, record in load_game_records(conn, owner_id))
    return records


def export_all(
    engine: Engine,
    owner_id: str,
    *,
    delimiter: str | None = None,
    encoding: str | None = None,
) -> bytes:
    """Return the owner's whole catalog as a flat file."""

    try:
        with engine.connect() as conn:
            records = collect_export_records(conn, owner_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to read catalog for owner %s", owner_id)
        raise SyncError("failed to read catalog for export") from exc
    logger.info("Exporting %d records for owner %s", len(records), owner_id)
    return write_flat_file(records, delimiter=_delimiter(delimiter), encoding=_encoding(encoding))


def _run_merge(
    engine: Engine,
    owner_id: str,
    rows: Sequence[FlatRow],
    now_factory: Callable[[], datetime],
) -> MergeResult:
    try:
        return MergeEngine(engine, owner_id, now_factory=now_factory).merge(rows)
    except SQLAlchemyError as exc:
        logger.exception("Import aborted for owner %s", owner_id)
        raise SyncError("import failed before rows could be processed") from exc


def import_all(
    engine: Engine,
    owner_id: str,
    data: bytes | str,
    *,
    delimiter: str | None = None,
    encoding: str | None = None,
    now_factory: Callable[[], datetime] = utc_now,
) -> MergeResult:
    """Merge a flat file into the owner's catalog.

    Raises :class:`~sync.errors.FlatFileError` when the file cannot be read;
    row-level failures are collected in the returned result.
    """

    rows = read_flat_file(data, delimiter=_delimiter(delimiter), encoding=_encoding(encoding))
    return _run_merge(engine, owner_id, rows, now_factory)


def _referenced_catalog_records(
    catalog_records: Sequence[CatalogRecord], game_rows: Sequence[FlatRow]
) -> list[CatalogRecord]:
    wanted: dict[RecordType, set[str]] = {kind: set() for kind in CATALOG_TYPES}
    for row in game_rows:
        wanted[RecordType.STATUS].add(row["Status"].casefold())
        wanted[RecordType.PLATFORM].add(row["Platform"].casefold())
        wanted[RecordType.PLAYED_STATUS].add(row["PlayedStatus"].casefold())
        for name in row["PlayWith"].split(","):
            wanted[RecordType.PLAY_WITH].add(name.strip().casefold())
    return [
        record
        for record in catalog_records
        if record.name.casefold() in wanted[record.kind]
    ]


def export_selective(
    engine: Engine,
    owner_id: str,
    game_ids: Sequence[int],
    global_config: ExportConfig,
    per_game_config: Mapping[int, ExportConfig] | None = None,
    *,
    delimiter: str | None = None,
    encoding: str | None = None,
) -> bytes:
    """Return the chosen games, and the catalog rows they reference, as a flat file.

    Ids that do not belong to the owner are ignored.
    """

    per_game_config = per_game_config or {}
    try:
        with engine.connect() as conn:
            game_records = load_game_records(conn, owner_id, game_ids)
            catalog_records = load_catalog_records(conn, owner_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to read games for selective export (owner %s)", owner_id)
        raise SyncError("failed to read catalog for export") from exc

    game_rows = [
        apply_export_config(encode_record(record), global_config, per_game_config.get(game_id))
        for game_id, record in game_records
    ]
    rows: list[Record | FlatRow] = list(
        _referenced_catalog_records(catalog_records, game_rows)
    )
    rows.extend(game_rows)
    logger.info(
        "Selective export of %d games for owner %s (%d requested)",
        len(game_rows),
        owner_id,
        len(game_ids),
    )
    return write_flat_file(rows, delimiter=_delimiter(delimiter), encoding=_encoding(encoding))


def import_selective(
    engine: Engine,
    owner_id: str,
    data: bytes | str,
    global_config: ImportConfig,
    per_game_config: Mapping[str, ImportConfig] | None = None,
    *,
    delimiter: str | None = None,
    encoding: str | None = None,
    now_factory: Callable[[], datetime] = utc_now,
) -> SelectiveImportResult:
    """Merge a flat file, rewriting each game row per its import config.

    ``per_game_config`` is keyed by case-folded game name.
    """

    per_game_config = per_game_config or {}
    rows = read_flat_file(data, delimiter=_delimiter(delimiter), encoding=_encoding(encoding))
    prepared: list[FlatRow] = []
    for row in rows:
        if RecordType.parse(row.get("Type")) is RecordType.GAME:
            entity_config = per_game_config.get(row.get("Name", "").strip().casefold())
            row = apply_import_config(row, global_config, entity_config)
        prepared.append(row)

    merged = _run_merge(engine, owner_id, prepared, now_factory)
    return SelectiveImportResult(
        inserted=merged.inserted["games"],
        updated=merged.updated["games"],
        errors=list(merged.errors),
    )


__all__ = [
    "SelectiveImportResult",
    "collect_export_records",
    "export_all",
    "export_selective",
    "import_all",
    "import_selective",
    "load_catalog_records",
    "load_game_records",
]
