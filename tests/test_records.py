import pytest

from sync.errors import FlatFileError
from sync.records import (
    FLAT_COLUMNS,
    CatalogRecord,
    GameRecord,
    RecordType,
    SpecialStatusType,
    ViewRecord,
    decode_row,
    encode_record,
    read_flat_file,
    write_flat_file,
)


def test_flat_columns_start_with_type_and_name():
    assert FLAT_COLUMNS[:2] == ("Type", "Name")
    assert len(FLAT_COLUMNS) == len(set(FLAT_COLUMNS))
    assert "PlayWith" in FLAT_COLUMNS
    assert "FiltersJson" in FLAT_COLUMNS


def test_record_type_parse_is_case_insensitive():
    assert RecordType.parse("game") is RecordType.GAME
    assert RecordType.parse(" PLAYWITH ") is RecordType.PLAY_WITH
    assert RecordType.parse("Console") is None
    assert RecordType.parse(None) is None


def test_special_status_type_unknown_maps_to_none():
    assert SpecialStatusType.parse("notfulfilled") is SpecialStatusType.NOT_FULFILLED
    assert SpecialStatusType.parse("Abandoned") is SpecialStatusType.NONE
    assert SpecialStatusType.parse("") is SpecialStatusType.NONE


def test_decode_catalog_row_applies_defaults():
    record = decode_row(
        {"Type": "Platform", "Name": " Steam ", "IsActive": "garbage", "SortOrder": "x"}
    )

    assert isinstance(record, CatalogRecord)
    assert record.kind is RecordType.PLATFORM
    assert record.name == "Steam"
    assert record.color == "#ffffff"
    assert record.is_active is True
    assert record.sort_order == 0


def test_decode_status_row_reads_role_fields():
    record = decode_row(
        {
            "Type": "Status",
            "Name": "Wishlist",
            "StatusType": "NotFulfilled",
            "IsDefault": "true",
            "IsActive": "false",
            "SortOrder": "4",
        }
    )

    assert record.status_type is SpecialStatusType.NOT_FULFILLED
    assert record.is_default is True
    assert record.is_active is False
    assert record.sort_order == 4


def test_decode_game_row_parses_lists_and_numbers():
    record = decode_row(
        {
            "Type": "Game",
            "Name": "Halo",
            "Status": "Playing",
            "PlayWith": "Solo, Friends, solo",
            "Critic": "85",
            "Story": "12.0",
            "Grade": "n/a",
            "Score": "3.86",
            "Comment": "  keeps spacing ",
        }
    )

    assert isinstance(record, GameRecord)
    assert record.play_with == ["Solo", "Friends"]
    assert record.critic == 85
    assert record.story == 12
    assert record.grade is None
    assert record.score == pytest.approx(3.86)
    assert record.comment == "  keeps spacing "


def test_decode_unknown_type_returns_none():
    assert decode_row({"Type": "Console", "Name": "PS5"}) is None


def test_encode_record_leaves_unrelated_columns_empty():
    row = encode_record(CatalogRecord(kind=RecordType.PLATFORM, name="Steam", sort_order=2))

    assert row["Type"] == "Platform"
    assert row["SortOrder"] == "2"
    assert row["IsActive"] == "true"
    assert row["IsDefault"] == ""
    assert row["StatusType"] == ""
    assert row["Status"] == ""
    assert set(row) == set(FLAT_COLUMNS)


def test_encode_game_formats_numbers():
    row = encode_record(
        GameRecord(name="Halo", status="Playing", play_with=["Solo", "Friends"],
                   critic=85, story=10, score=4.25)
    )

    assert row["PlayWith"] == "Solo, Friends"
    assert row["Critic"] == "85"
    assert row["Score"] == "4.25"
    assert row["Grade"] == ""


def test_flat_file_round_trip_preserves_quoted_values():
    view = ViewRecord(
        name="Backlog",
        filters_json='{"status": ["Playing", "Completed"]}',
        sorting_json='[{"field": "name"}]',
    )
    game = GameRecord(name="Halo, Combat Evolved", status="Playing", comment='He said "hi"')

    data = write_flat_file([view, game])
    rows = read_flat_file(data)

    assert [row["Type"] for row in rows] == ["View", "Game"]
    assert rows[0]["FiltersJson"] == view.filters_json
    assert rows[1]["Name"] == "Halo, Combat Evolved"
    assert rows[1]["Comment"] == 'He said "hi"'


def test_read_flat_file_tolerates_bom_case_and_extra_columns():
    data = "\ufefftype,NAME,Extra\nplatform,Steam,ignored\n".encode("utf-8")

    rows = read_flat_file(data)

    assert rows == [{**{column: "" for column in FLAT_COLUMNS}, "Type": "platform", "Name": "Steam"}]


def test_read_flat_file_supports_custom_delimiter_and_encoding():
    text = "Type;Name\nPlatform;Café\n"

    rows = read_flat_file(text.encode("latin-1"), delimiter=";", encoding="latin-1")

    assert rows[0]["Name"] == "Café"


def test_read_flat_file_requires_type_column():
    with pytest.raises(FlatFileError):
        read_flat_file(b"Name,Color\nSteam,#fff\n")


def test_read_flat_file_rejects_empty_input():
    with pytest.raises(FlatFileError):
        read_flat_file(b"   \n")


def test_read_flat_file_rejects_undecodable_bytes():
    with pytest.raises(FlatFileError):
        read_flat_file(b"\xff\xfeType\n", encoding="utf-8")
