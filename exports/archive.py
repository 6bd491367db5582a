"""Bundled exports: a ZIP archive or a mirrored directory tree.

Both targets share one layout under a root folder::

    Backups/database_full_export_<date>.csv
    Settings/{Platforms,Status,PlayWith,PlayedStatus,Views}.json
    Games/<safe-name>/info.json, logo.<ext>, cover.<ext>

Games are exported incrementally using the export cache: unchanged games are
skipped, games whose only problem was a failed image download get that image
retried, and modified games are written in full.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import re
import time
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Hashable, Mapping, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

import config
from exports.assets import AssetFetcher, AssetRequest, AssetResult, build_asset_fetcher
from exports.cache import (
    AssetOutcome,
    ExportAction,
    ExportDecision,
    GameExportState,
    decide_game_export,
    load_game_export_index,
    load_view_hashes,
    record_game_export,
    record_view_export,
    view_configuration_hash,
    view_needs_export,
)
from helpers import safe_folder_name, utc_now
from sync.errors import SyncError
from sync.records import CatalogRecord, GameRecord, RecordType, write_flat_file
from sync.service import load_catalog_records, load_game_records
from views.service import list_view_rows, view_record_from_row

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "database_full_export_"
SETTINGS_FILES: dict[RecordType, str] = {
    RecordType.PLATFORM: "Platforms.json",
    RecordType.STATUS: "Status.json",
    RecordType.PLAY_WITH: "PlayWith.json",
    RecordType.PLAYED_STATUS: "PlayedStatus.json",
}
VIEWS_FILE = "Views.json"
ASSET_KINDS = ("logo", "cover")


@dataclass
class ArchiveStats:
    total_games: int = 0
    games_exported: int = 0
    games_skipped: int = 0
    images_downloaded: int = 0
    images_retried: int = 0
    images_failed: int = 0
    views_changed: int = 0
    failed_images: dict[str, list[str]] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalGames": self.total_games,
            "gamesExported": self.games_exported,
            "gamesSkipped": self.games_skipped,
            "imagesDownloaded": self.images_downloaded,
            "imagesRetried": self.images_retried,
            "imagesFailed": self.images_failed,
            "viewsChanged": self.views_changed,
            "failedImages": {name: list(kinds) for name, kinds in self.failed_images.items()},
            "elapsedSeconds": round(self.elapsed_seconds, 3),
        }


@dataclass
class ArchiveResult:
    archive_bytes: bytes
    file_name: str
    stats: ArchiveStats


def _json_bytes(payload: Any) -> bytes:
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


class ZipArchiveWriter:
    """Write the export layout into an in-memory ZIP file."""

    def __init__(self, root_name: str) -> None:
        self._root = root_name.strip("/")
        self._buffer = io.BytesIO()
        self._zip = zipfile.ZipFile(self._buffer, "w", compression=zipfile.ZIP_DEFLATED)

    def _name(self, *parts: str) -> str:
        return "/".join((self._root, *parts))

    def write_backup(self, date_text: str, data: bytes) -> str:
        name = f"{BACKUP_PREFIX}{date_text}.csv"
        self._zip.writestr(self._name("Backups", name), data)
        return name

    def write_json(self, parts: Sequence[str], payload: Any) -> bool:
        self._zip.writestr(self._name(*parts), _json_bytes(payload))
        return True

    def write_asset(self, folder: str, kind: str, extension: str, data: bytes) -> None:
        self._zip.writestr(self._name("Games", folder, f"{kind}{extension}"), data)

    def close(self) -> bytes:
        self._zip.close()
        return self._buffer.getvalue()


class DirectoryArchiveWriter:
    """Mirror the export layout onto a directory, touching only changed files."""

    def __init__(self, base_dir: Path) -> None:
        self._base = Path(base_dir)
        self.files_written = 0
        self.files_unchanged = 0

    def write_backup(self, date_text: str, data: bytes) -> str:
        backups = self._base / "Backups"
        backups.mkdir(parents=True, exist_ok=True)
        base_name = f"{BACKUP_PREFIX}{date_text}"
        name = f"{base_name}.csv"
        if (backups / name).exists():
            version = 2
            pattern = re.compile(re.escape(base_name) + r"_v(\d+)\.csv$")
            for existing in backups.iterdir():
                match = pattern.match(existing.name)
                if match:
                    version = max(version, int(match.group(1)) + 1)
            name = f"{base_name}_v{version}.csv"
        (backups / name).write_bytes(data)
        self.files_written += 1
        return name

    def write_json(self, parts: Sequence[str], payload: Any) -> bool:
        """Write ``payload`` unless the file already holds identical content."""

        target = self._base.joinpath(*parts)
        data = _json_bytes(payload)
        if target.exists():
            current = hashlib.sha256(target.read_bytes()).digest()
            if current == hashlib.sha256(data).digest():
                self.files_unchanged += 1
                return False
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        self.files_written += 1
        return True

    def write_asset(self, folder: str, kind: str, extension: str, data: bytes) -> None:
        game_dir = self._base / "Games" / folder
        game_dir.mkdir(parents=True, exist_ok=True)
        for stale in game_dir.glob(f"{kind}.*"):
            if stale.suffix.lower() != extension:
                stale.unlink()
        (game_dir / f"{kind}{extension}").write_bytes(data)
        self.files_written += 1


def _catalog_payload(record: CatalogRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": record.name,
        "color": record.color,
        "isActive": record.is_active,
        "sortOrder": record.sort_order,
    }
    if record.kind is RecordType.STATUS:
        payload["statusType"] = record.status_type.value
        payload["isDefault"] = record.is_default
    return payload


def _game_info_payload(record: GameRecord) -> dict[str, Any]:
    return {
        "name": record.name,
        "status": record.status,
        "platform": record.platform,
        "playWith": ", ".join(record.play_with),
        "playedStatus": record.played_status,
        "released": record.released,
        "started": record.started,
        "finished": record.finished,
        "score": record.score,
        "critic": record.critic,
        "criticProvider": record.critic_provider,
        "grade": record.grade,
        "completion": record.completion,
        "story": record.story,
        "comment": record.comment,
        "logo": record.logo,
        "cover": record.cover,
    }


def _assign_folders(states: Sequence[GameExportState]) -> dict[int, str]:
    folders: dict[int, str] = {}
    taken: set[str] = set()
    for state in states:
        base = safe_folder_name(state.name)
        folder = base
        suffix = 1
        # A suffixed name may itself be another game's folder ("Halo 2").
        while folder.casefold() in taken:
            suffix += 1
            folder = f"{base}_{suffix}"
        taken.add(folder.casefold())
        folders[state.game_id] = folder
    return folders


def _asset_requests(
    state: GameExportState, decision: ExportDecision
) -> list[AssetRequest]:
    requests: list[AssetRequest] = []
    if decision.fetch_logo and state.logo:
        requests.append(AssetRequest(key=(state.game_id, "logo"), url=state.logo))
    if decision.fetch_cover and state.cover:
        requests.append(AssetRequest(key=(state.game_id, "cover"), url=state.cover))
    return requests


def _run_export(
    engine: Engine,
    owner_id: str,
    writer: ZipArchiveWriter | DirectoryArchiveWriter,
    *,
    full: bool,
    fetcher: AssetFetcher,
    now_factory: Callable[[], datetime],
    delimiter: str | None = None,
    encoding: str | None = None,
) -> ArchiveStats:
    started = time.monotonic()
    stats = ArchiveStats()
    now = now_factory()

    try:
        with engine.connect() as conn:
            with conn.begin():
                catalog_records = load_catalog_records(conn, owner_id)
                view_rows = list_view_rows(conn, owner_id)
                game_records = load_game_records(conn, owner_id)
                index = load_game_export_index(conn, owner_id)
                view_hashes = load_view_hashes(conn, [row["id"] for row in view_rows])
    except SQLAlchemyError as exc:
        logger.exception("Failed to read catalog for bundled export (owner %s)", owner_id)
        raise SyncError("failed to read catalog for bundled export") from exc

    view_records = [view_record_from_row(row) for row in view_rows]
    backup_records = [*catalog_records, *view_records, *(r for _i, r in game_records)]
    writer.write_backup(
        now.strftime("%Y-%m-%d"),
        write_flat_file(
            backup_records,
            delimiter=delimiter or config.FLAT_FILE_DELIMITER,
            encoding=encoding or config.FLAT_FILE_ENCODING,
        ),
    )

    for kind, file_name in SETTINGS_FILES.items():
        writer.write_json(
            ("Settings", file_name),
            [_catalog_payload(record) for record in catalog_records if record.kind is kind],
        )
    writer.write_json(
        ("Settings", VIEWS_FILE),
        [
            {
                "name": record.name,
                "description": record.description,
                "filtersJson": record.filters_json,
                "sortingJson": record.sorting_json,
                "sortOrder": record.sort_order,
                "isPublic": record.is_public,
                "createdBy": record.created_by,
            }
            for record in view_records
        ],
    )

    changed_views: list[tuple[int, str]] = []
    for row in view_rows:
        current_hash = view_configuration_hash(row["name"], row["filters_json"], row["sorting_json"])
        if view_needs_export(current_hash, view_hashes.get(row["id"])):
            changed_views.append((row["id"], current_hash))
    stats.views_changed = len(changed_views)

    records_by_id = dict(game_records)
    folders = _assign_folders([state for state, _cache in index])
    decisions: list[tuple[GameExportState, ExportDecision]] = []
    requests: list[AssetRequest] = []
    stats.total_games = len(index)
    for state, cache in index:
        decision = decide_game_export(state, cache, full=full)
        if decision.action is ExportAction.SKIP:
            logger.debug("Skipping '%s': unchanged since last export", state.name)
            stats.games_skipped += 1
            continue
        decisions.append((state, decision))
        requests.extend(_asset_requests(state, decision))

    results: Mapping[Hashable, AssetResult] = fetcher.fetch_many(requests)

    with engine.connect() as conn:
        for view_id, current_hash in changed_views:
            try:
                with conn.begin():
                    record_view_export(conn, view_id, current_hash, now=now)
            except SQLAlchemyError:
                logger.exception("Failed to update export cache for view %s", view_id)

        for state, decision in decisions:
            folder = folders[state.game_id]
            is_full = decision.action is ExportAction.FULL
            stats.games_exported += 1
            if is_full:
                writer.write_json(
                    ("Games", folder, "info.json"),
                    _game_info_payload(records_by_id[state.game_id]),
                )

            outcomes: dict[str, AssetOutcome] = {}
            for kind in ASSET_KINDS:
                url = state.logo if kind == "logo" else state.cover
                wanted = decision.fetch_logo if kind == "logo" else decision.fetch_cover
                if not wanted:
                    outcomes[kind] = AssetOutcome(url=url, fetched=False, attempted=False)
                    continue
                if not is_full:
                    stats.images_retried += 1
                    logger.info("Retrying %s download for '%s'", kind, state.name)
                result = results.get((state.game_id, kind))
                if result is None:
                    outcomes[kind] = AssetOutcome(url=url, fetched=False)
                    continue
                if result.ok:
                    writer.write_asset(folder, kind, result.extension, result.data)
                    stats.images_downloaded += 1
                else:
                    stats.images_failed += 1
                    stats.failed_images.setdefault(state.name, []).append(kind)
                outcomes[kind] = AssetOutcome(url=url, fetched=result.ok)

            try:
                with conn.begin():
                    record_game_export(
                        conn,
                        state.game_id,
                        logo=outcomes["logo"],
                        cover=outcomes["cover"],
                        full=is_full,
                        now=now,
                        snapshot=state.updated_at,
                    )
            except SQLAlchemyError:
                logger.exception("Failed to update export cache for game '%s'", state.name)

    stats.elapsed_seconds = time.monotonic() - started
    logger.info(
        "Bundled export for owner %s: %d games, %d exported, %d skipped, "
        "%d images downloaded, %d failed",
        owner_id,
        stats.total_games,
        stats.games_exported,
        stats.games_skipped,
        stats.images_downloaded,
        stats.images_failed,
    )
    return stats


def export_archive(
    engine: Engine,
    owner_id: str,
    *,
    full: bool = False,
    fetcher: AssetFetcher | None = None,
    root_name: str | None = None,
    now_factory: Callable[[], datetime] = utc_now,
    delimiter: str | None = None,
    encoding: str | None = None,
) -> ArchiveResult:
    """Return a ZIP archive of the owner's catalog.

    With ``full`` every game is re-exported regardless of its cache state.
    """

    writer = ZipArchiveWriter(root_name or config.ARCHIVE_ROOT_NAME)
    stats = _run_export(
        engine,
        owner_id,
        writer,
        full=full,
        fetcher=fetcher or build_asset_fetcher(),
        now_factory=now_factory,
        delimiter=delimiter,
        encoding=encoding,
    )
    stamp = now_factory().strftime("%Y%m%d_%H%M%S")
    prefix = "full" if full else "incremental"
    return ArchiveResult(
        archive_bytes=writer.close(),
        file_name=f"games_export_{prefix}_{stamp}.zip",
        stats=stats,
    )


def sync_to_directory(
    engine: Engine,
    owner_id: str,
    target_dir: Path | str | None = None,
    *,
    full: bool = False,
    fetcher: AssetFetcher | None = None,
    now_factory: Callable[[], datetime] = utc_now,
    delimiter: str | None = None,
    encoding: str | None = None,
) -> ArchiveStats:
    """Mirror the owner's catalog into ``<target_dir>/<owner_id>/``."""

    base = Path(target_dir) if target_dir is not None else config.EXPORT_DIR_PATH
    safe_owner = safe_folder_name(owner_id)
    writer = DirectoryArchiveWriter(base / safe_owner)
    stats = _run_export(
        engine,
        owner_id,
        writer,
        full=full,
        fetcher=fetcher or build_asset_fetcher(),
        now_factory=now_factory,
        delimiter=delimiter,
        encoding=encoding,
    )
    logger.info(
        "Directory sync for owner %s: %d files written, %d unchanged",
        owner_id,
        writer.files_written,
        writer.files_unchanged,
    )
    return stats


__all__ = [
    "ArchiveResult",
    "ArchiveStats",
    "DirectoryArchiveWriter",
    "ZipArchiveWriter",
    "export_archive",
    "sync_to_directory",
]
