"""Game persistence helpers.

Every write path funnels through :func:`prepare_game_values`, which stamps
timestamps, recomputes the derived score and raises the modified-since-export
flag when the caller reports a metadata-affecting change.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, MutableMapping, Sequence

from sqlalchemy import delete as sa_delete, func, insert, select, update as sa_update
from sqlalchemy.engine import Connection, RowMapping

from db.schema import game_export_cache, game_play_with, games, play_with
from helpers import _normalize_lookup_name, utc_now
from sync.records import GameRecord

logger = logging.getLogger(__name__)


class GameServiceError(RuntimeError):
    """Base class for game persistence errors."""


class GameNotFoundError(GameServiceError):
    """Raised when a game cannot be located for the owner."""


_TEXT_FIELDS = frozenset(
    {
        "name",
        "released",
        "started",
        "finished",
        "critic_provider",
        "comment",
        "logo",
        "cover",
    }
)


def compute_score(critic: int | None, story: int | None) -> float | None:
    """Return the composite score for ``critic`` and ``story`` ratings."""

    if critic is None or story is None:
        return None
    if story + 10 == 0:
        return None
    return round(10 * (critic / 100) * (10 / (story + 10)), 2)


def normalize_game_values(values: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``values`` with blank text fields stored as ``None``."""

    normalized: dict[str, Any] = {}
    for key, value in values.items():
        if key in _TEXT_FIELDS and key != "name":
            text = _normalize_lookup_name(value) if key != "comment" else value
            normalized[key] = text if text else None
        else:
            normalized[key] = value
    return normalized


def prepare_game_values(
    values: MutableMapping[str, Any],
    *,
    creating: bool,
    affects_metadata: bool,
    now: datetime | None = None,
    current: Mapping[str, Any] | None = None,
) -> MutableMapping[str, Any]:
    """Apply the pre-save transformation to ``values`` in place.

    ``current`` supplies stored ratings when only one of ``critic`` or
    ``story`` is being written.
    """

    timestamp = now or utc_now()
    if creating:
        values.setdefault("created_at", timestamp)
    values["updated_at"] = timestamp
    if "critic" in values or "story" in values:
        base = current or {}
        critic = values.get("critic", base.get("critic"))
        story = values.get("story", base.get("story"))
        values["score"] = compute_score(critic, story)
    if affects_metadata:
        values["modified_since_export"] = True
    return values


def find_game_by_name(
    conn: Connection, owner_id: str, raw_name: Any
) -> RowMapping | None:
    name = _normalize_lookup_name(raw_name)
    if not name:
        return None
    return (
        conn.execute(
            select(games).where(
                games.c.owner_id == owner_id,
                func.lower(games.c.name) == name.lower(),
            )
        )
        .mappings()
        .first()
    )


def get_game(conn: Connection, owner_id: str, game_id: int) -> RowMapping:
    row = (
        conn.execute(
            select(games).where(games.c.owner_id == owner_id, games.c.id == game_id)
        )
        .mappings()
        .first()
    )
    if row is None:
        raise GameNotFoundError(f"game {game_id} not found")
    return row


def get_play_with_ids(conn: Connection, game_id: int) -> list[int]:
    return [
        row.play_with_id
        for row in conn.execute(
            select(game_play_with.c.play_with_id)
            .where(game_play_with.c.game_id == game_id)
            .order_by(game_play_with.c.play_with_id)
        )
    ]


def replace_play_with(conn: Connection, game_id: int, play_with_ids: Sequence[int]) -> None:
    """Replace every play-with link of ``game_id`` with ``play_with_ids``."""

    conn.execute(sa_delete(game_play_with).where(game_play_with.c.game_id == game_id))
    unique_ids = list(dict.fromkeys(play_with_ids))
    if unique_ids:
        conn.execute(
            insert(game_play_with),
            [{"game_id": game_id, "play_with_id": item} for item in unique_ids],
        )


def insert_game(
    conn: Connection,
    owner_id: str,
    name: str,
    values: Mapping[str, Any],
    play_with_ids: Sequence[int] = (),
    *,
    now: datetime | None = None,
) -> int:
    """Insert a new game and its play-with links, returning the new id."""

    payload = normalize_game_values(values)
    payload.update(owner_id=owner_id, name=_normalize_lookup_name(name))
    if payload.get("status_id") is None:
        raise GameServiceError("status is required")
    prepare_game_values(payload, creating=True, affects_metadata=True, now=now)
    result = conn.execute(insert(games).values(**payload))
    game_id = int(result.inserted_primary_key[0])
    replace_play_with(conn, game_id, play_with_ids)
    return game_id


def diff_game_values(
    current: Mapping[str, Any], values: Mapping[str, Any]
) -> dict[str, Any]:
    """Return the subset of ``values`` that differs from ``current``."""

    normalized = normalize_game_values(values)
    return {
        key: value for key, value in normalized.items() if current.get(key) != value
    }


def update_game(
    conn: Connection,
    current: Mapping[str, Any],
    changes: Mapping[str, Any],
    *,
    affects_metadata: bool = True,
    now: datetime | None = None,
) -> None:
    payload = dict(changes)
    prepare_game_values(
        payload,
        creating=False,
        affects_metadata=affects_metadata,
        now=now,
        current=current,
    )
    conn.execute(sa_update(games).where(games.c.id == current["id"]).values(**payload))


def mark_game_exported(
    conn: Connection,
    game_id: int,
    *,
    now: datetime | None = None,
    unchanged_since: datetime | None = None,
) -> bool:
    """Clear the modified-since-export flag after a successful full export.

    With ``unchanged_since`` the flag is only cleared when the game has not
    been saved after that instant. Returns whether a row was updated.
    """

    payload = prepare_game_values(
        {"modified_since_export": False},
        creating=False,
        affects_metadata=False,
        now=now,
    )
    statement = sa_update(games).where(games.c.id == game_id)
    if unchanged_since is not None:
        statement = statement.where(games.c.updated_at <= unchanged_since)
    return conn.execute(statement.values(**payload)).rowcount > 0


def delete_game(conn: Connection, owner_id: str, game_id: int) -> None:
    """Delete a game together with its play-with links and export cache row."""

    get_game(conn, owner_id, game_id)
    conn.execute(sa_delete(game_export_cache).where(game_export_cache.c.game_id == game_id))
    conn.execute(sa_delete(game_play_with).where(game_play_with.c.game_id == game_id))
    conn.execute(sa_delete(games).where(games.c.id == game_id))
    logger.info("Deleted game %s for owner %s", game_id, owner_id)


def play_with_names_by_game(
    conn: Connection, owner_id: str, game_ids: Iterable[int] | None = None
) -> dict[int, list[str]]:
    """Return play-with names per game ordered by catalog position."""

    query = (
        select(game_play_with.c.game_id, play_with.c.name)
        .join(play_with, play_with.c.id == game_play_with.c.play_with_id)
        .where(play_with.c.owner_id == owner_id)
        .order_by(game_play_with.c.game_id, play_with.c.sort_order, play_with.c.name)
    )
    if game_ids is not None:
        query = query.where(game_play_with.c.game_id.in_(list(game_ids)))
    names: dict[int, list[str]] = {}
    for row in conn.execute(query):
        names.setdefault(row.game_id, []).append(row.name)
    return names


def game_record_from_row(
    row: Mapping[str, Any],
    *,
    status_names: Mapping[int, str],
    platform_names: Mapping[int, str],
    played_status_names: Mapping[int, str],
    play_with_names: Sequence[str] = (),
) -> GameRecord:
    def text(key: str) -> str:
        value = row.get(key)
        return "" if value is None else str(value)

    return GameRecord(
        name=row["name"],
        status=status_names.get(row.get("status_id"), ""),
        platform=platform_names.get(row.get("platform_id"), ""),
        play_with=list(play_with_names),
        played_status=played_status_names.get(row.get("played_status_id"), ""),
        released=text("released"),
        started=text("started"),
        finished=text("finished"),
        score=row.get("score"),
        critic=row.get("critic"),
        critic_provider=text("critic_provider"),
        grade=row.get("grade"),
        completion=row.get("completion"),
        story=row.get("story"),
        comment=text("comment"),
        logo=text("logo"),
        cover=text("cover"),
    )


__all__ = [
    "GameNotFoundError",
    "GameServiceError",
    "compute_score",
    "delete_game",
    "diff_game_values",
    "find_game_by_name",
    "game_record_from_row",
    "get_game",
    "get_play_with_ids",
    "insert_game",
    "mark_game_exported",
    "normalize_game_values",
    "play_with_names_by_game",
    "prepare_game_values",
    "replace_play_with",
    "update_game",
]
