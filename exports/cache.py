"""Per-game and per-view export state used by incremental bundled exports.

Cache rows only remember what the last export achieved. The game and view
tables stay the source of truth: losing a cache row forces a re-export but
never loses data.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from sqlalchemy import insert, select, update as sa_update
from sqlalchemy.engine import Connection

from db.schema import game_export_cache, games, view_export_cache, views
from games.service import mark_game_exported
from helpers import utc_now

logger = logging.getLogger(__name__)


class ExportAction(str, Enum):
    FULL = "full"
    ASSETS = "assets"
    SKIP = "skip"


@dataclass(frozen=True)
class GameExportState:
    """The minimal game fields needed to decide whether to export it."""

    game_id: int
    name: str
    modified_since_export: bool
    logo: str
    cover: str
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CacheEntry:
    game_id: int
    last_exported_at: datetime | None
    logo_fetched: bool
    cover_fetched: bool
    logo_url: str
    cover_url: str


@dataclass(frozen=True)
class ExportDecision:
    action: ExportAction
    retry_logo: bool = False
    retry_cover: bool = False

    @property
    def fetch_logo(self) -> bool:
        return self.action is ExportAction.FULL or self.retry_logo

    @property
    def fetch_cover(self) -> bool:
        return self.action is ExportAction.FULL or self.retry_cover


@dataclass(frozen=True)
class AssetOutcome:
    """Result of one asset attempt; ``attempted=False`` keeps the cached state."""

    url: str
    fetched: bool
    attempted: bool = True


def _asset_needs_retry(url: str, fetched: bool, last_url: str) -> bool:
    return bool(url) and not fetched and url == last_url


def decide_game_export(
    game: GameExportState, cache: CacheEntry | None, *, full: bool
) -> ExportDecision:
    """Return how ``game`` should be handled by a bundled export."""

    if full or cache is None or game.modified_since_export:
        return ExportDecision(ExportAction.FULL)
    retry_logo = _asset_needs_retry(game.logo, cache.logo_fetched, cache.logo_url)
    retry_cover = _asset_needs_retry(game.cover, cache.cover_fetched, cache.cover_url)
    if retry_logo or retry_cover:
        return ExportDecision(
            ExportAction.ASSETS, retry_logo=retry_logo, retry_cover=retry_cover
        )
    return ExportDecision(ExportAction.SKIP)


def _cache_entry_from_row(row: Mapping[str, Any]) -> CacheEntry:
    return CacheEntry(
        game_id=int(row["game_id"]),
        last_exported_at=row.get("last_exported_at"),
        logo_fetched=bool(row.get("logo_fetched")),
        cover_fetched=bool(row.get("cover_fetched")),
        logo_url=row.get("logo_url") or "",
        cover_url=row.get("cover_url") or "",
    )


def load_game_export_index(
    conn: Connection, owner_id: str
) -> list[tuple[GameExportState, CacheEntry | None]]:
    """Return every game of the owner with its cache row, ordered by name.

    Only the identity, modified flag and asset URLs are read so that skipped
    games cost no further reads.
    """

    query = (
        select(
            games.c.id,
            games.c.name,
            games.c.modified_since_export,
            games.c.logo,
            games.c.cover,
            games.c.updated_at,
            game_export_cache.c.game_id.label("cache_game_id"),
            game_export_cache.c.last_exported_at,
            game_export_cache.c.logo_fetched,
            game_export_cache.c.cover_fetched,
            game_export_cache.c.logo_url,
            game_export_cache.c.cover_url,
        )
        .select_from(
            games.outerjoin(game_export_cache, game_export_cache.c.game_id == games.c.id)
        )
        .where(games.c.owner_id == owner_id)
        .order_by(games.c.name, games.c.id)
    )
    index: list[tuple[GameExportState, CacheEntry | None]] = []
    for row in conn.execute(query).mappings():
        state = GameExportState(
            game_id=int(row["id"]),
            name=row["name"],
            modified_since_export=bool(row["modified_since_export"]),
            logo=(row["logo"] or "").strip(),
            cover=(row["cover"] or "").strip(),
            updated_at=row["updated_at"],
        )
        cache = None
        if row["cache_game_id"] is not None:
            cache = _cache_entry_from_row({**row, "game_id": row["cache_game_id"]})
        index.append((state, cache))
    return index


def get_game_cache(conn: Connection, game_id: int) -> CacheEntry | None:
    row = (
        conn.execute(
            select(game_export_cache).where(game_export_cache.c.game_id == game_id)
        )
        .mappings()
        .first()
    )
    return None if row is None else _cache_entry_from_row(row)


def record_game_export(
    conn: Connection,
    game_id: int,
    *,
    logo: AssetOutcome,
    cover: AssetOutcome,
    full: bool,
    now: datetime | None = None,
    snapshot: datetime | None = None,
) -> None:
    """Upsert the cache row for ``game_id`` after an export attempt.

    Assets that were not attempted keep their previous state. The game's
    modified flag is cleared only for a full export, and only when the game
    has not been saved again after ``snapshot`` (its ``updated_at`` as read
    before the export started).
    """

    timestamp = now or utc_now()
    current = get_game_cache(conn, game_id)
    values: dict[str, Any] = {"last_exported_at": timestamp, "updated_at": timestamp}
    for prefix, outcome in (("logo", logo), ("cover", cover)):
        if outcome.attempted:
            values[f"{prefix}_fetched"] = outcome.fetched
            values[f"{prefix}_url"] = outcome.url or None
        elif current is None:
            values[f"{prefix}_fetched"] = False
            values[f"{prefix}_url"] = outcome.url or None

    if current is None:
        conn.execute(
            insert(game_export_cache).values(
                game_id=game_id, created_at=timestamp, **values
            )
        )
    else:
        conn.execute(
            sa_update(game_export_cache)
            .where(game_export_cache.c.game_id == game_id)
            .values(**values)
        )
    if full and not mark_game_exported(
        conn, game_id, now=timestamp, unchanged_since=snapshot
    ):
        logger.info("Game %s changed during export; keeping it marked as modified", game_id)


def view_configuration_hash(name: str, filters_json: str | None, sorting_json: str | None) -> str:
    """Return the SHA-256 fingerprint of a view's exported configuration."""

    payload = f"{filters_json or ''}{sorting_json or ''}{name or ''}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def load_view_hashes(conn: Connection, view_ids: list[int]) -> dict[int, str]:
    if not view_ids:
        return {}
    rows = conn.execute(
        select(view_export_cache.c.view_id, view_export_cache.c.configuration_hash).where(
            view_export_cache.c.view_id.in_(view_ids)
        )
    )
    return {row.view_id: row.configuration_hash for row in rows}


def view_needs_export(current_hash: str, cached_hash: str | None) -> bool:
    return cached_hash is None or cached_hash != current_hash


def record_view_export(
    conn: Connection,
    view_id: int,
    configuration_hash: str,
    *,
    now: datetime | None = None,
) -> None:
    timestamp = now or utc_now()
    exists = conn.execute(
        select(view_export_cache.c.id).where(view_export_cache.c.view_id == view_id)
    ).first()
    values = {
        "last_exported_at": timestamp,
        "configuration_hash": configuration_hash,
        "updated_at": timestamp,
    }
    if exists is None:
        conn.execute(
            insert(view_export_cache).values(view_id=view_id, created_at=timestamp, **values)
        )
    else:
        conn.execute(
            sa_update(view_export_cache)
            .where(view_export_cache.c.view_id == view_id)
            .values(**values)
        )
    conn.execute(
        sa_update(views).where(views.c.id == view_id).values(modified_since_export=False)
    )


__all__ = [
    "AssetOutcome",
    "CacheEntry",
    "ExportAction",
    "ExportDecision",
    "GameExportState",
    "decide_game_export",
    "get_game_cache",
    "load_game_export_index",
    "load_view_hashes",
    "record_game_export",
    "record_view_export",
    "view_configuration_hash",
    "view_needs_export",
]
