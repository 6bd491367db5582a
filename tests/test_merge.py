from sqlalchemy import select

from catalogs.service import upsert_catalog_record
from db.schema import game_play_with, games, platforms, play_with, statuses, views
from games.service import insert_game
from sync.merge import MergeEngine, merge_rows
from sync.records import read_flat_file
from sync.service import export_all, import_all
from tests.app_helpers import (
    FIXED_NOW,
    OTHER_OWNER,
    OWNER,
    add_game,
    count_rows,
    fetch_game,
    fixed_now,
    flat_csv,
    play_with_for,
)


def _merge(engine, *rows, owner=OWNER):
    return merge_rows(engine, owner, read_flat_file(flat_csv(*rows)), now_factory=fixed_now)


def test_import_creates_game_with_references(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Halo", "Status": "Playing", "Platform": "Steam",
         "PlayWith": "Solo, Friends", "Critic": "80", "Story": "10"},
    )

    assert result.errors == []
    assert result.inserted["games"] == 1
    game = fetch_game(seeded_engine, OWNER, "Halo")
    assert game["modified_since_export"] is True
    assert game["score"] == 4.0
    assert game["created_at"] == FIXED_NOW
    assert play_with_for(seeded_engine, game["id"]) == ["Friends", "Solo"]


def test_catalog_rows_are_merged_before_games(engine):
    result = _merge(
        engine,
        {"Type": "Game", "Name": "Halo", "Status": "Playing", "Platform": "Xbox"},
        {"Type": "Platform", "Name": "Xbox"},
        {"Type": "Status", "Name": "Playing"},
    )

    assert result.errors == []
    assert result.inserted["platforms"] == 1
    assert result.inserted["statuses"] == 1
    assert result.inserted["games"] == 1
    game = fetch_game(engine, OWNER, "Halo")
    assert game["platform_id"] is not None


def test_game_without_known_status_is_reported_and_skipped(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Halo", "Status": "Abandoned"},
        {"Type": "Game", "Name": "Portal", "Status": "Completed"},
        {"Type": "Game", "Name": "Doom"},
    )

    assert result.inserted["games"] == 1
    assert result.errors == [
        "Game 'Halo': Status 'Abandoned' not found",
        "Game 'Doom': Status is required",
    ]
    assert fetch_game(seeded_engine, OWNER, "Halo") is None
    assert fetch_game(seeded_engine, OWNER, "Portal") is not None


def test_unknown_type_and_blank_names_are_row_errors(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Console", "Name": "PS5"},
        {"Type": "Platform", "Name": "  "},
        {"Type": "Platform", "Name": "Epic"},
    )

    assert result.errors == [
        "Row 1: unknown record type 'Console'",
        "Row 2: Platform name is required",
    ]
    assert result.inserted["platforms"] == 1


def test_existing_game_is_matched_case_insensitively(seeded_engine):
    game_id = add_game(seeded_engine, OWNER, "Halo", play_with_names=["Solo"])

    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "HALO", "Status": "Completed", "PlayWith": "Friends"},
    )

    assert result.inserted["games"] == 0
    assert result.updated["games"] == 1
    assert count_rows(seeded_engine, games, OWNER) == 1
    game = fetch_game(seeded_engine, OWNER, "halo")
    assert game["id"] == game_id
    assert game["name"] == "HALO"
    assert play_with_for(seeded_engine, game_id) == ["Friends"]


def test_import_replaces_fields_destructively(seeded_engine):
    add_game(
        seeded_engine, OWNER, "Halo", platform="Steam", play_with_names=["Solo"],
        comment="great", critic=90, story=10,
    )

    result = _merge(seeded_engine, {"Type": "Game", "Name": "Halo", "Status": "Playing"})

    assert result.updated["games"] == 1
    game = fetch_game(seeded_engine, OWNER, "Halo")
    assert game["platform_id"] is None
    assert game["comment"] is None
    assert game["critic"] is None
    assert game["score"] is None
    assert play_with_for(seeded_engine, game["id"]) == []


def test_existing_game_keeps_status_when_status_unknown(seeded_engine):
    add_game(seeded_engine, OWNER, "Halo", status="Completed")

    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Halo", "Status": "Abandoned", "Comment": "again"},
    )

    assert result.errors == []
    game = fetch_game(seeded_engine, OWNER, "Halo")
    with seeded_engine.connect() as conn:
        status_name = conn.execute(
            select(statuses.c.name).where(statuses.c.id == game["status_id"])
        ).scalar_one()
    assert status_name == "Completed"
    assert game["comment"] == "again"


def test_unknown_play_with_names_are_dropped(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Halo", "Status": "Playing", "PlayWith": "Solo, Strangers"},
    )

    assert result.errors == []
    game = fetch_game(seeded_engine, OWNER, "Halo")
    assert play_with_for(seeded_engine, game["id"]) == ["Solo"]


def test_catalog_upsert_renames_updates_and_appends(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Platform", "Name": "steam", "Color": "#123456", "IsActive": "false"},
        {"Type": "Platform", "Name": "GOG"},
    )

    assert result.updated["platforms"] == 1
    assert result.inserted["platforms"] == 1
    with seeded_engine.connect() as conn:
        rows = {
            row.name: row
            for row in conn.execute(select(platforms).where(platforms.c.owner_id == OWNER))
        }
    assert rows["steam"].color == "#123456"
    assert rows["steam"].is_active is False
    assert rows["steam"].sort_order == 1
    assert rows["GOG"].sort_order == 3


def test_default_status_is_matched_by_role_and_renamed(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Status", "Name": "Wishlist", "StatusType": "NotFulfilled",
         "IsDefault": "true", "Color": "#ff0000", "SortOrder": "3"},
    )

    assert result.errors == []
    assert result.updated["statuses"] == 1
    assert result.inserted["statuses"] == 0
    with seeded_engine.connect() as conn:
        names = sorted(
            conn.execute(select(statuses.c.name).where(statuses.c.owner_id == OWNER)).scalars()
        )
    assert names == ["Completed", "Playing", "Wishlist"]


def test_role_match_rename_onto_existing_name_is_a_row_error(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Status", "Name": "Completed", "StatusType": "NotFulfilled",
         "IsDefault": "true"},
        {"Type": "Status", "Name": "Dropped"},
    )

    assert len(result.errors) == 1
    assert result.errors[0].startswith("Status 'Completed':")
    assert result.inserted["statuses"] == 1
    assert count_rows(seeded_engine, statuses, OWNER) == 4


def test_store_rejects_second_default_of_same_type_without_losing_neighbours(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Status", "Name": "Dropped", "IsDefault": "true"},
        {"Type": "Status", "Name": "On Hold", "IsDefault": "true"},
        {"Type": "Status", "Name": "Wishlist"},
    )

    assert result.inserted["statuses"] == 2
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Status 'On Hold':")
    assert count_rows(seeded_engine, statuses, OWNER) == 5


def test_views_are_upserted_with_opaque_configuration(seeded_engine):
    filters = '{"platform": ["Steam"]}'
    first = _merge(
        seeded_engine,
        {"Type": "View", "Name": "Steam games", "FiltersJson": filters},
    )
    second = _merge(
        seeded_engine,
        {"Type": "View", "Name": "steam GAMES", "FiltersJson": filters,
         "Description": "All Steam games", "SortOrder": "999"},
    )

    assert first.inserted["views"] == 1
    assert second.updated["views"] == 1
    with seeded_engine.connect() as conn:
        row = conn.execute(select(views).where(views.c.owner_id == OWNER)).mappings().one()
    assert row["filters_json"] == filters
    assert row["description"] == "All Steam games"
    assert row["sort_order"] == 999
    assert row["modified_since_export"] is True


def test_owners_are_isolated(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Halo", "Status": "Playing"},
        owner=OTHER_OWNER,
    )

    assert result.errors == ["Game 'Halo': Status 'Playing' not found"]
    assert count_rows(seeded_engine, games) == 0


def test_export_then_import_reports_no_changes(seeded_engine):
    add_game(
        seeded_engine, OWNER, "Halo", platform="Steam", play_with_names=["Solo", "Friends"],
        critic=85, story=12, comment="Finish the fight", released="2001",
    )
    add_game(seeded_engine, OWNER, "Portal", status="Completed")
    _merge(seeded_engine, {"Type": "View", "Name": "All", "FiltersJson": "{}"})

    data = export_all(seeded_engine, OWNER)
    result = import_all(seeded_engine, OWNER, data, now_factory=fixed_now)

    assert result.errors == []
    assert result.total_inserted == 0
    assert result.total_updated == 0


def test_export_imports_into_empty_owner(seeded_engine):
    add_game(seeded_engine, OWNER, "Halo", platform="Steam", play_with_names=["Solo"])

    data = export_all(seeded_engine, OWNER)
    result = import_all(seeded_engine, OTHER_OWNER, data, now_factory=fixed_now)

    assert result.errors == []
    assert result.inserted == {
        "platforms": 2,
        "statuses": 3,
        "play_with": 2,
        "played_statuses": 1,
        "views": 0,
        "games": 1,
    }
    game = fetch_game(seeded_engine, OTHER_OWNER, "Halo")
    assert play_with_for(seeded_engine, game["id"]) == ["Solo"]


def test_merge_engine_uses_injected_clock(seeded_engine):
    engine = MergeEngine(seeded_engine, OWNER, now_factory=fixed_now)

    engine.merge([{"Type": "Game", "Name": "Halo", "Status": "Playing"}])

    assert fetch_game(seeded_engine, OWNER, "Halo")["updated_at"] == FIXED_NOW


def test_play_with_links_are_unique_per_game(seeded_engine):
    _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Halo", "Status": "Playing", "PlayWith": "Solo, solo, Solo"},
    )

    assert count_rows(seeded_engine, game_play_with) == 1
    assert count_rows(seeded_engine, play_with, OWNER) == 2


def test_association_replace_grows_to_exact_set(seeded_engine):
    game_id = add_game(seeded_engine, OWNER, "Halo", play_with_names=["Solo"])

    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Halo", "Status": "Playing", "PlayWith": "Solo, Friends"},
    )

    assert result.updated["games"] == 1
    assert play_with_for(seeded_engine, game_id) == ["Friends", "Solo"]
    assert count_rows(seeded_engine, game_play_with) == 2


def test_importing_same_file_twice_is_idempotent(seeded_engine):
    data = flat_csv(
        {"Type": "Platform", "Name": "Epic"},
        {"Type": "Status", "Name": "Playing", "SortOrder": "1"},
        {"Type": "View", "Name": "Backlog", "FiltersJson": '{"status": "Playing"}'},
        {"Type": "Game", "Name": "Halo", "Status": "Playing", "Platform": "Epic",
         "PlayWith": "Solo, Friends", "Critic": "80", "Story": "10", "Released": "2001",
         "Comment": "Finish the fight"},
        {"Type": "Game", "Name": "Portal", "Status": "Completed"},
    )

    first = import_all(seeded_engine, OWNER, data, now_factory=fixed_now)
    second = import_all(seeded_engine, OWNER, data, now_factory=fixed_now)

    assert first.errors == []
    assert first.inserted["platforms"] == 1
    assert first.inserted["views"] == 1
    assert first.inserted["games"] == 2
    assert second.errors == []
    assert second.total_inserted == 0
    assert second.total_updated == 0


def test_out_of_range_numbers_do_not_abort_game_import(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Game", "Name": "Portal", "Status": "Playing"},
        {"Type": "Game", "Name": "Halo", "Status": "Playing",
         "Critic": "99999999999999999999", "Story": "1e30", "Score": "inf"},
        {"Type": "Game", "Name": "Zelda", "Status": "Playing"},
    )

    assert result.errors == []
    assert result.inserted["games"] == 3
    halo = fetch_game(seeded_engine, OWNER, "Halo")
    assert halo["critic"] is None
    assert halo["story"] is None
    assert fetch_game(seeded_engine, OWNER, "Zelda") is not None


def test_out_of_range_sort_order_falls_back_to_append(seeded_engine):
    result = _merge(
        seeded_engine,
        {"Type": "Platform", "Name": "Epic", "SortOrder": "99999999999999999999"},
        {"Type": "Platform", "Name": "GOG"},
    )

    assert result.errors == []
    assert result.inserted["platforms"] == 2
    with seeded_engine.connect() as conn:
        orders = dict(
            conn.execute(
                select(platforms.c.name, platforms.c.sort_order).where(
                    platforms.c.owner_id == OWNER
                )
            ).all()
        )
    assert orders["Epic"] == 3
    assert orders["GOG"] == 4


def test_store_bind_failures_are_row_errors(seeded_engine, monkeypatch):
    def failing_upsert(conn, owner_id, record):
        if record.name == "Epic":
            raise OverflowError("Python int too large to convert to SQLite INTEGER")
        return upsert_catalog_record(conn, owner_id, record)

    def failing_insert(conn, owner_id, name, *args, **kwargs):
        if name == "Halo":
            raise OverflowError("Python int too large to convert to SQLite INTEGER")
        return insert_game(conn, owner_id, name, *args, **kwargs)

    monkeypatch.setattr("sync.merge.upsert_catalog_record", failing_upsert)
    monkeypatch.setattr("sync.merge.insert_game", failing_insert)

    result = _merge(
        seeded_engine,
        {"Type": "Platform", "Name": "Epic"},
        {"Type": "Platform", "Name": "GOG"},
        {"Type": "Game", "Name": "Halo", "Status": "Playing"},
        {"Type": "Game", "Name": "Zelda", "Status": "Playing"},
    )

    assert result.errors == [
        "Platform 'Epic': Python int too large to convert to SQLite INTEGER",
        "Game 'Halo': Python int too large to convert to SQLite INTEGER",
    ]
    assert result.inserted["platforms"] == 1
    assert result.inserted["games"] == 1
    assert fetch_game(seeded_engine, OWNER, "Halo") is None
    assert fetch_game(seeded_engine, OWNER, "Zelda") is not None
