"""Typed catalog rows and their flat tabular representation.

Every record kind is written to the same wide table: a ``Type`` discriminator
followed by the union of all per-kind columns. Columns that do not apply to a
row are left empty. Decoding is tolerant so that a damaged export can still be
imported: unknown columns are ignored, missing ones read as empty, and
malformed scalars fall back to their defaults.
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Union

import pandas as pd

from db.schema import DEFAULT_COLOR
from helpers import (
    _dedupe_preserve_order,
    _format_bool,
    _normalize_lookup_name,
    _parse_bool,
    _parse_int,
    _parse_iterable,
    _parse_optional_int,
)
from sync.errors import FlatFileError

logger = logging.getLogger(__name__)


class RecordType(str, Enum):
    PLATFORM = "Platform"
    STATUS = "Status"
    PLAY_WITH = "PlayWith"
    PLAYED_STATUS = "PlayedStatus"
    VIEW = "View"
    GAME = "Game"

    @classmethod
    def parse(cls, value: Any) -> "RecordType | None":
        """Return the member named by ``value`` (case-insensitive) or ``None``."""

        text = _normalize_lookup_name(value).casefold()
        for member in cls:
            if member.value.casefold() == text:
                return member
        return None


CATALOG_TYPES: tuple[RecordType, ...] = (
    RecordType.PLATFORM,
    RecordType.STATUS,
    RecordType.PLAY_WITH,
    RecordType.PLAYED_STATUS,
)


class SpecialStatusType(str, Enum):
    NONE = "None"
    NOT_FULFILLED = "NotFulfilled"

    @classmethod
    def parse(cls, value: Any) -> "SpecialStatusType":
        """Return the member named by ``value``; unknown text maps to ``NONE``."""

        text = _normalize_lookup_name(value).casefold()
        for member in cls:
            if member.value.casefold() == text:
                return member
        if text:
            logger.debug("Unknown special status type %r treated as None", value)
        return cls.NONE


FLAT_COLUMNS: tuple[str, ...] = (
    "Type",
    "Name",
    "Color",
    "IsActive",
    "SortOrder",
    "IsDefault",
    "StatusType",
    "Status",
    "Platform",
    "PlayWith",
    "PlayedStatus",
    "Released",
    "Started",
    "Finished",
    "Score",
    "Critic",
    "CriticProvider",
    "Grade",
    "Completion",
    "Story",
    "Comment",
    "Logo",
    "Cover",
    "Description",
    "FiltersJson",
    "SortingJson",
    "IsPublic",
    "CreatedBy",
)

# Game columns whose treatment can be overridden in selective export/import.
GAME_PROPERTY_COLUMNS: tuple[str, ...] = (
    "Status",
    "Platform",
    "PlayWith",
    "PlayedStatus",
    "Released",
    "Started",
    "Finished",
    "Critic",
    "CriticProvider",
    "Grade",
    "Completion",
    "Story",
    "Comment",
    "Logo",
    "Cover",
)

FlatRow = dict[str, str]


@dataclass
class CatalogRecord:
    kind: RecordType
    name: str
    color: str = DEFAULT_COLOR
    is_active: bool = True
    sort_order: int = 0
    status_type: SpecialStatusType = SpecialStatusType.NONE
    is_default: bool = False


@dataclass
class ViewRecord:
    name: str
    description: str = ""
    filters_json: str = ""
    sorting_json: str = ""
    sort_order: int = 0
    is_public: bool = True
    created_by: str = ""

    kind = RecordType.VIEW


@dataclass
class GameRecord:
    name: str
    status: str = ""
    platform: str = ""
    play_with: list[str] = field(default_factory=list)
    played_status: str = ""
    released: str = ""
    started: str = ""
    finished: str = ""
    score: float | None = None
    critic: int | None = None
    critic_provider: str = ""
    grade: int | None = None
    completion: int | None = None
    story: int | None = None
    comment: str = ""
    logo: str = ""
    cover: str = ""

    kind = RecordType.GAME


Record = Union[CatalogRecord, ViewRecord, GameRecord]


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _number_text(value: int | float | None) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _parse_optional_float(value: Any) -> float | None:
    text = _normalize_lookup_name(value)
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def empty_row(kind: RecordType) -> FlatRow:
    row = {column: "" for column in FLAT_COLUMNS}
    row["Type"] = kind.value
    return row


def encode_record(record: Record) -> FlatRow:
    """Return the flat representation of ``record``."""

    row = empty_row(record.kind)
    row["Name"] = record.name
    if isinstance(record, CatalogRecord):
        row["Color"] = record.color
        row["IsActive"] = _format_bool(record.is_active)
        row["SortOrder"] = str(record.sort_order)
        if record.kind is RecordType.STATUS:
            row["IsDefault"] = _format_bool(record.is_default)
            row["StatusType"] = record.status_type.value
    elif isinstance(record, ViewRecord):
        row["Description"] = record.description
        row["FiltersJson"] = record.filters_json
        row["SortingJson"] = record.sorting_json
        row["SortOrder"] = str(record.sort_order)
        row["IsPublic"] = _format_bool(record.is_public)
        row["CreatedBy"] = record.created_by
    else:
        row.update(
            {
                "Status": record.status,
                "Platform": record.platform,
                "PlayWith": ", ".join(record.play_with),
                "PlayedStatus": record.played_status,
                "Released": record.released,
                "Started": record.started,
                "Finished": record.finished,
                "Score": _number_text(record.score),
                "Critic": _number_text(record.critic),
                "CriticProvider": record.critic_provider,
                "Grade": _number_text(record.grade),
                "Completion": _number_text(record.completion),
                "Story": _number_text(record.story),
                "Comment": record.comment,
                "Logo": record.logo,
                "Cover": record.cover,
            }
        )
    return row


def decode_row(row: Mapping[str, Any]) -> Record | None:
    """Return the typed record for ``row`` or ``None`` for an unknown type."""

    kind = RecordType.parse(row.get("Type"))
    if kind is None:
        return None

    def value(column: str) -> str:
        return _text(row.get(column)).strip()

    name = value("Name")
    if kind in CATALOG_TYPES:
        return CatalogRecord(
            kind=kind,
            name=name,
            color=value("Color") or DEFAULT_COLOR,
            is_active=_parse_bool(row.get("IsActive"), True),
            sort_order=_parse_int(row.get("SortOrder"), 0),
            status_type=SpecialStatusType.parse(row.get("StatusType")),
            is_default=_parse_bool(row.get("IsDefault"), False),
        )
    if kind is RecordType.VIEW:
        return ViewRecord(
            name=name,
            description=value("Description"),
            filters_json=_text(row.get("FiltersJson")),
            sorting_json=_text(row.get("SortingJson")),
            sort_order=_parse_int(row.get("SortOrder"), 0),
            is_public=_parse_bool(row.get("IsPublic"), True),
            created_by=value("CreatedBy"),
        )
    return GameRecord(
        name=name,
        status=value("Status"),
        platform=value("Platform"),
        play_with=_dedupe_preserve_order(_parse_iterable(row.get("PlayWith"))),
        played_status=value("PlayedStatus"),
        released=value("Released"),
        started=value("Started"),
        finished=value("Finished"),
        score=_parse_optional_float(row.get("Score")),
        critic=_parse_optional_int(row.get("Critic")),
        critic_provider=value("CriticProvider"),
        grade=_parse_optional_int(row.get("Grade")),
        completion=_parse_optional_int(row.get("Completion")),
        story=_parse_optional_int(row.get("Story")),
        comment=_text(row.get("Comment")),
        logo=value("Logo"),
        cover=value("Cover"),
    )


def write_flat_file(
    rows: Iterable[Record | Mapping[str, str]],
    *,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> bytes:
    """Serialize ``rows`` to delimited text encoded with ``encoding``."""

    flat_rows = [
        dict(row) if isinstance(row, Mapping) else encode_record(row)
        for row in rows
    ]
    frame = pd.DataFrame(flat_rows, columns=list(FLAT_COLUMNS)).fillna("")
    text = frame.to_csv(index=False, sep=delimiter, lineterminator="\n")
    return text.encode(encoding)


def read_flat_file(
    data: bytes | str,
    *,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> list[FlatRow]:
    """Parse delimited text into flat rows keyed by canonical column names.

    Raises :class:`FlatFileError` when the input cannot be decoded or lacks the
    ``Type`` discriminator column.
    """

    if isinstance(data, bytes):
        try:
            text = data.decode(encoding)
        except (UnicodeDecodeError, LookupError) as exc:
            raise FlatFileError(f"flat file is not valid {encoding} text") from exc
    else:
        text = data
    text = text.lstrip("\ufeff")
    if not text.strip():
        raise FlatFileError("flat file is empty")

    try:
        frame = pd.read_csv(
            io.StringIO(text),
            sep=delimiter,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as exc:
        raise FlatFileError("flat file could not be parsed") from exc

    canonical = {column.casefold(): column for column in FLAT_COLUMNS}
    column_map: dict[str, str] = {}
    for source in frame.columns:
        target = canonical.get(str(source).strip().casefold())
        if target is not None and target not in column_map.values():
            column_map[source] = target
    if "Type" not in column_map.values():
        raise FlatFileError("flat file is missing the Type column")

    rows: list[FlatRow] = []
    for raw in frame.to_dict(orient="records"):
        row = {column: "" for column in FLAT_COLUMNS}
        for source, target in column_map.items():
            row[target] = _text(raw.get(source))
        rows.append(row)
    return rows


__all__ = [
    "CATALOG_TYPES",
    "CatalogRecord",
    "FLAT_COLUMNS",
    "FlatRow",
    "GAME_PROPERTY_COLUMNS",
    "GameRecord",
    "Record",
    "RecordType",
    "SpecialStatusType",
    "ViewRecord",
    "decode_row",
    "empty_row",
    "encode_record",
    "read_flat_file",
    "write_flat_file",
]
