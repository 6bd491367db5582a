"""SQLAlchemy Core table definitions for the game catalog."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    true,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

DEFAULT_COLOR = "#ffffff"
DEFAULT_VIEW_SORT_ORDER = 999


def _catalog_table(name: str, *extra: Column) -> Table:
    table = Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("owner_id", String(64), nullable=False, index=True),
        Column("name", String(255), nullable=False),
        Column("color", String(32), nullable=False, default=DEFAULT_COLOR),
        Column("is_active", Boolean, nullable=False, default=True),
        Column("sort_order", Integer, nullable=False, default=0),
        *extra,
    )
    Index(
        f"ux_{name}_owner_name",
        table.c.owner_id,
        func.lower(table.c.name),
        unique=True,
    )
    return table


platforms = _catalog_table("platforms")
play_with = _catalog_table("play_with")
played_statuses = _catalog_table("played_statuses")
statuses = _catalog_table(
    "statuses",
    Column("status_type", String(32), nullable=False, default="None"),
    Column("is_default", Boolean, nullable=False, default=False),
)

# At most one default status per (owner, special type).
Index(
    "ux_statuses_owner_type_default",
    statuses.c.owner_id,
    statuses.c.status_type,
    unique=True,
    sqlite_where=statuses.c.is_default == true(),
    postgresql_where=statuses.c.is_default == true(),
)

games = Table(
    "games",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("status_id", Integer, ForeignKey("statuses.id"), nullable=False),
    Column(
        "platform_id",
        Integer,
        ForeignKey("platforms.id", ondelete="SET NULL"),
        nullable=True,
    ),
    Column(
        "played_status_id",
        Integer,
        ForeignKey("played_statuses.id", ondelete="SET NULL"),
        nullable=True,
    ),
    Column("released", String(64)),
    Column("started", String(64)),
    Column("finished", String(64)),
    Column("critic", Integer),
    Column("critic_provider", String(255)),
    Column("grade", Integer),
    Column("completion", Integer),
    Column("story", Integer),
    Column("score", Float),
    Column("comment", Text),
    Column("logo", Text),
    Column("cover", Text),
    Column("modified_since_export", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)
Index("ux_games_owner_name", games.c.owner_id, func.lower(games.c.name), unique=True)

game_play_with = Table(
    "game_play_with",
    metadata,
    Column(
        "game_id",
        Integer,
        ForeignKey("games.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "play_with_id",
        Integer,
        ForeignKey("play_with.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)

views = Table(
    "views",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(64), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("description", String(500)),
    Column("filters_json", Text, nullable=False, default=""),
    Column("sorting_json", Text),
    Column("sort_order", Integer, nullable=False, default=DEFAULT_VIEW_SORT_ORDER),
    Column("is_public", Boolean, nullable=False, default=True),
    Column("created_by", String(255)),
    Column("modified_since_export", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)
Index("ux_views_owner_name", views.c.owner_id, func.lower(views.c.name), unique=True)

game_export_cache = Table(
    "game_export_cache",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "game_id",
        Integer,
        ForeignKey("games.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("last_exported_at", DateTime, nullable=False),
    Column("logo_fetched", Boolean, nullable=False, default=False),
    Column("cover_fetched", Boolean, nullable=False, default=False),
    Column("logo_url", Text),
    Column("cover_url", Text),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

view_export_cache = Table(
    "view_export_cache",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "view_id",
        Integer,
        ForeignKey("views.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("last_exported_at", DateTime, nullable=False),
    Column("configuration_hash", String(64), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

CATALOG_TABLES: dict[str, Table] = {
    "Platform": platforms,
    "Status": statuses,
    "PlayWith": play_with,
    "PlayedStatus": played_statuses,
}


def create_schema(engine: Engine) -> None:
    """Create every catalog table that does not exist yet."""

    metadata.create_all(engine)


__all__ = [
    "CATALOG_TABLES",
    "DEFAULT_COLOR",
    "DEFAULT_VIEW_SORT_ORDER",
    "create_schema",
    "game_export_cache",
    "game_play_with",
    "games",
    "metadata",
    "platforms",
    "play_with",
    "played_statuses",
    "statuses",
    "view_export_cache",
    "views",
]
