import pytest
from sqlalchemy import select

from catalogs.service import (
    CatalogNotFoundError,
    ReferenceResolver,
    catalog_table,
    list_catalog_records,
    next_sort_order,
    reorder_catalog,
)
from db.schema import platforms
from sync.records import RecordType
from tests.app_helpers import OTHER_OWNER, OWNER


def test_resolver_matches_names_case_insensitively(seeded_engine):
    with seeded_engine.connect() as conn:
        resolver = ReferenceResolver(conn, OWNER)

        assert resolver.status_id(" playing ") is not None
        assert resolver.status_id("playing") == resolver.status_id("PLAYING")
        assert resolver.platform_id("steam") is not None
        assert resolver.played_status_id("finished") is not None
        assert resolver.platform_id("") is None
        assert resolver.platform_id("Atari") is None


def test_resolver_is_scoped_to_owner(seeded_engine):
    with seeded_engine.connect() as conn:
        assert ReferenceResolver(conn, OTHER_OWNER).status_id("Playing") is None


def test_play_with_ids_drop_unknown_and_duplicates(seeded_engine):
    with seeded_engine.connect() as conn:
        resolver = ReferenceResolver(conn, OWNER)
        ids = resolver.play_with_ids(["Friends", "solo", "Strangers", "FRIENDS"])

        assert len(ids) == 2
        assert ids[0] == resolver.play_with_ids(["Friends"])[0]


def test_catalog_table_rejects_unknown_kind():
    assert catalog_table(RecordType.PLATFORM) is platforms
    with pytest.raises(CatalogNotFoundError):
        catalog_table("Console")


def test_next_sort_order_appends(seeded_engine):
    with seeded_engine.connect() as conn:
        assert next_sort_order(conn, platforms, OWNER) == 3
        assert next_sort_order(conn, platforms, OTHER_OWNER) == 1


def test_reorder_catalog_renumbers_densely(seeded_engine):
    with seeded_engine.begin() as conn:
        ids = {
            row.name: row.id
            for row in conn.execute(
                select(platforms.c.id, platforms.c.name).where(platforms.c.owner_id == OWNER)
            )
        }
        order = reorder_catalog(conn, RecordType.PLATFORM, OWNER, [ids["Switch"]])

    assert order == [ids["Switch"], ids["Steam"]]
    with seeded_engine.connect() as conn:
        records = list_catalog_records(conn, RecordType.PLATFORM, OWNER)
    assert [(record.name, record.sort_order) for record in records] == [
        ("Switch", 1),
        ("Steam", 2),
    ]


def test_reorder_catalog_rejects_foreign_ids(seeded_engine):
    with seeded_engine.begin() as conn:
        with pytest.raises(CatalogNotFoundError):
            reorder_catalog(conn, RecordType.PLATFORM, OWNER, [12345])
