"""General-purpose helper utilities shared across the application."""

from __future__ import annotations

import numbers
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Iterable

import pandas as pd


__all__ = [
    "UNKNOWN_FOLDER_NAME",
    "_dedupe_preserve_order",
    "_format_bool",
    "_normalize_lookup_name",
    "_parse_bool",
    "_parse_int",
    "_parse_iterable",
    "_parse_optional_int",
    "safe_folder_name",
    "utc_now",
]

UNKNOWN_FOLDER_NAME = "Unknown_Game"
_MAX_FOLDER_NAME_LENGTH = 200

_TRUE_TOKENS = {"true", "1", "yes", "y", "on"}
_FALSE_TOKENS = {"false", "0", "no", "n", "off"}

# Signed 64-bit range accepted by the database drivers.
_INT_MIN = -(2**63)
_INT_MAX = 2**63 - 1


def utc_now() -> datetime:
    """Return the current timestamp as a naive UTC ``datetime``."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_lookup_name(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def _dedupe_preserve_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        text = str(value).strip()
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def _parse_iterable(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    if isinstance(value, numbers.Number):
        return [str(value)]
    try:
        iterator = iter(value)
    except TypeError:
        return [str(value)]
    items = [_normalize_lookup_name(element) for element in iterator]
    return [item for item in items if item]


def _parse_bool(value: Any, default: bool) -> bool:
    """Return ``value`` interpreted as a boolean, ``default`` when unparseable."""

    if isinstance(value, bool):
        return value
    text = _normalize_lookup_name(value).casefold()
    if text in _TRUE_TOKENS:
        return True
    if text in _FALSE_TOKENS:
        return False
    return default


def _format_bool(value: Any) -> str:
    return "true" if bool(value) else "false"


def _parse_optional_int(value: Any) -> int | None:
    """Return ``value`` as an integer or ``None`` when blank, malformed or
    outside the signed 64-bit range."""

    if isinstance(value, bool):
        return None
    if isinstance(value, numbers.Integral):
        return _within_int_range(int(value))
    text = _normalize_lookup_name(value)
    if not text:
        return None
    try:
        return _within_int_range(int(text))
    except ValueError:
        pass
    try:
        numeric = float(text)
    except (ValueError, OverflowError):
        return None
    if not numeric.is_integer():
        return None
    return _within_int_range(int(numeric))


def _within_int_range(value: int) -> int | None:
    if _INT_MIN <= value <= _INT_MAX:
        return value
    return None


def _parse_int(value: Any, default: int) -> int:
    parsed = _parse_optional_int(value)
    return default if parsed is None else parsed


def safe_folder_name(name: Any) -> str:
    """Return a filesystem-safe folder name derived from ``name``.

    Accents are stripped, only letters, digits, spaces, ``-``, ``_``, ``.``
    and parentheses are kept, spaces become underscores, repeated underscores
    collapse, and the result is capped at 200 characters.
    """

    text = _normalize_lookup_name(name)
    if not text:
        return UNKNOWN_FOLDER_NAME

    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(
        ch for ch in decomposed if unicodedata.category(ch) != "Mn"
    )
    kept = "".join(
        ch for ch in unicodedata.normalize("NFC", stripped)
        if ch.isalnum() or ch in " -_.()"
    )
    cleaned = re.sub(r"_+", "_", kept.replace(" ", "_")).strip("_.")
    if len(cleaned) > _MAX_FOLDER_NAME_LENGTH:
        cleaned = cleaned[:_MAX_FOLDER_NAME_LENGTH].strip("_.")
    return cleaned or UNKNOWN_FOLDER_NAME
