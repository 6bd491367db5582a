from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine

from catalogs.service import ReferenceResolver
from db.schema import (
    game_export_cache,
    game_play_with,
    games,
    platforms,
    play_with,
    played_statuses,
    statuses,
)
from games.service import insert_game
from sync.records import FLAT_COLUMNS

OWNER = "user-1"
OTHER_OWNER = "user-2"
FIXED_NOW = datetime(2025, 3, 1, 12, 0, 0)


def fixed_now() -> datetime:
    return FIXED_NOW


def seed_catalog(engine: Engine, owner_id: str) -> None:
    """Insert a small catalog: statuses, platforms, play-with and played statuses."""

    with engine.begin() as conn:
        conn.execute(
            insert(statuses),
            [
                {"owner_id": owner_id, "name": "Playing", "color": "#00ff00",
                 "is_active": True, "sort_order": 1, "status_type": "None",
                 "is_default": False},
                {"owner_id": owner_id, "name": "Completed", "color": "#0000ff",
                 "is_active": True, "sort_order": 2, "status_type": "None",
                 "is_default": False},
                {"owner_id": owner_id, "name": "Not Fulfilled", "color": "#ff0000",
                 "is_active": True, "sort_order": 3, "status_type": "NotFulfilled",
                 "is_default": True},
            ],
        )
        conn.execute(
            insert(platforms),
            [
                {"owner_id": owner_id, "name": "Steam", "color": "#ffffff",
                 "is_active": True, "sort_order": 1},
                {"owner_id": owner_id, "name": "Switch", "color": "#ffffff",
                 "is_active": True, "sort_order": 2},
            ],
        )
        conn.execute(
            insert(play_with),
            [
                {"owner_id": owner_id, "name": "Solo", "color": "#ffffff",
                 "is_active": True, "sort_order": 1},
                {"owner_id": owner_id, "name": "Friends", "color": "#ffffff",
                 "is_active": True, "sort_order": 2},
            ],
        )
        conn.execute(
            insert(played_statuses),
            [
                {"owner_id": owner_id, "name": "Finished", "color": "#ffffff",
                 "is_active": True, "sort_order": 1},
            ],
        )


def add_game(
    engine: Engine,
    owner_id: str,
    name: str,
    *,
    status: str = "Playing",
    platform: str | None = None,
    play_with_names: Iterable[str] = (),
    **values: Any,
) -> int:
    with engine.begin() as conn:
        resolver = ReferenceResolver(conn, owner_id)
        payload = dict(values)
        payload["status_id"] = resolver.status_id(status)
        if platform:
            payload["platform_id"] = resolver.platform_id(platform)
        return insert_game(
            conn,
            owner_id,
            name,
            payload,
            resolver.play_with_ids(play_with_names),
            now=FIXED_NOW,
        )


def fetch_game(engine: Engine, owner_id: str, name: str) -> dict[str, Any] | None:
    with engine.connect() as conn:
        row = (
            conn.execute(
                select(games).where(
                    games.c.owner_id == owner_id,
                    func.lower(games.c.name) == name.lower(),
                )
            )
            .mappings()
            .first()
        )
    return dict(row) if row is not None else None


def play_with_for(engine: Engine, game_id: int) -> list[str]:
    with engine.connect() as conn:
        rows = conn.execute(
            select(play_with.c.name)
            .join(game_play_with, game_play_with.c.play_with_id == play_with.c.id)
            .where(game_play_with.c.game_id == game_id)
            .order_by(play_with.c.name)
        )
        return [row.name for row in rows]


def count_rows(engine: Engine, table, owner_id: str | None = None) -> int:
    query = select(func.count()).select_from(table)
    if owner_id is not None:
        query = query.where(table.c.owner_id == owner_id)
    with engine.connect() as conn:
        return int(conn.execute(query).scalar_one())


def cache_row(engine: Engine, game_id: int) -> dict[str, Any] | None:
    with engine.connect() as conn:
        row = (
            conn.execute(
                select(game_export_cache).where(game_export_cache.c.game_id == game_id)
            )
            .mappings()
            .first()
        )
    return dict(row) if row is not None else None


def flat_csv(*rows: dict[str, str], delimiter: str = ",") -> bytes:
    """Build a flat file with the full header from partial row dicts."""

    lines = [delimiter.join(FLAT_COLUMNS)]
    for row in rows:
        cells = []
        for column in FLAT_COLUMNS:
            value = str(row.get(column, ""))
            if delimiter in value or '"' in value or "\n" in value:
                value = '"' + value.replace('"', '""') + '"'
            cells.append(value)
        lines.append(delimiter.join(cells))
    return ("\n".join(lines) + "\n").encode("utf-8")
