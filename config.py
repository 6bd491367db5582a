"""Application-wide configuration helpers and constants."""
from __future__ import annotations

import codecs
import logging
import os
from pathlib import Path
from typing import Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")


logger = logging.getLogger(__name__)


def _clean_text(value: str | None) -> str:
    """Return ``value`` stripped of surrounding whitespace."""

    if value is None:
        return ""
    return value.strip()


def _path_from(env_value: str | None, default: str | Path) -> Path:
    """Resolve a filesystem path using an environment override when provided."""

    text = _clean_text(env_value)
    candidate = Path(text) if text else Path(default)
    candidate = candidate.expanduser()
    if candidate.is_absolute():
        try:
            return candidate.resolve()
        except (OSError, RuntimeError):  # pragma: no cover - fallback for exotic paths
            return candidate
    return candidate


def _coerce_positive_float(value: str | None, default: float) -> float:
    """Return ``value`` coerced to a positive float or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = float(text)
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_positive_int(value: str | None, default: int) -> int:
    """Return ``value`` coerced to a positive integer or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = int(float(text))
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_delimiter(value: str | None, default: str) -> str:
    """Return a single-character delimiter, accepting ``\\t`` for tabs."""

    if value is None:
        return default
    text = value if value.strip() == "" else value.strip()
    if text == "\\t":
        return "\t"
    if len(text) != 1:
        if text:
            logger.warning("Ignoring invalid flat-file delimiter %r", text)
        return default
    return text


def _coerce_encoding(value: str | None, default: str) -> str:
    """Return a codec name known to Python or ``default`` when unknown."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        return codecs.lookup(text).name
    except LookupError:
        logger.warning("Ignoring unknown flat-file encoding %r", text)
        return default


LOG_DIR_PATH: Final[Path] = _path_from(os.environ.get("LOG_DIR"), BASE_DIR / "logs")
LOG_DIR: Final[str] = os.fspath(LOG_DIR_PATH)
LOG_FILE_PATH: Final[Path] = _path_from(
    os.environ.get("LOG_FILE"), LOG_DIR_PATH / "app.log"
)
LOG_FILE: Final[str] = os.fspath(LOG_FILE_PATH)

EXPORT_DIR_PATH: Final[Path] = _path_from(
    os.environ.get("EXPORT_DIR"), BASE_DIR.parent / "exports"
)
EXPORT_DIR: Final[str] = os.fspath(EXPORT_DIR_PATH)


def _build_db_dsn() -> str:
    """Return a database DSN from ``DB_DSN`` or the default SQLite file."""

    override = _clean_text(os.environ.get("DB_DSN"))
    if override:
        return override

    sqlite_path = _path_from(None, BASE_DIR / "game_catalog.db").resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


DB_DSN: Final[str] = _build_db_dsn()

DB_CONNECT_TIMEOUT_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("DB_CONNECT_TIMEOUT"), 10.0
)

FLAT_FILE_DELIMITER: Final[str] = _coerce_delimiter(
    os.environ.get("FLAT_FILE_DELIMITER"), ","
)
FLAT_FILE_ENCODING: Final[str] = _coerce_encoding(
    os.environ.get("FLAT_FILE_ENCODING"), "utf-8"
)

ARCHIVE_ROOT_NAME: Final[str] = (
    _clean_text(os.environ.get("ARCHIVE_ROOT_NAME")) or "Games Database"
)

DEFAULT_ASSET_USER_AGENT: Final[str] = "GameCatalogSync/1.0"
ASSET_USER_AGENT: Final[str] = (
    _clean_text(os.environ.get("ASSET_USER_AGENT")) or DEFAULT_ASSET_USER_AGENT
)
ASSET_FETCH_TIMEOUT_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("ASSET_FETCH_TIMEOUT"), 15.0
)
ASSET_FETCH_WORKERS: Final[int] = _coerce_positive_int(
    os.environ.get("ASSET_FETCH_WORKERS"), 1
)
ASSET_FETCH_BUDGET_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("ASSET_FETCH_BUDGET"), 600.0
)

APP_SECRET_KEY: Final[str] = _clean_text(os.environ.get("APP_SECRET_KEY")) or "dev-secret"


def _validate_settings() -> None:
    """Sanity-check critical configuration values."""

    if not APP_SECRET_KEY:
        raise RuntimeError("APP_SECRET_KEY must not be empty")
    if not ARCHIVE_ROOT_NAME:
        raise RuntimeError("ARCHIVE_ROOT_NAME must not be empty")


_validate_settings()


__all__ = [
    "APP_SECRET_KEY",
    "ARCHIVE_ROOT_NAME",
    "ASSET_FETCH_BUDGET_SECONDS",
    "ASSET_FETCH_TIMEOUT_SECONDS",
    "ASSET_FETCH_WORKERS",
    "ASSET_USER_AGENT",
    "BASE_DIR",
    "DB_CONNECT_TIMEOUT_SECONDS",
    "DB_DSN",
    "DEFAULT_ASSET_USER_AGENT",
    "EXPORT_DIR",
    "EXPORT_DIR_PATH",
    "FLAT_FILE_DELIMITER",
    "FLAT_FILE_ENCODING",
    "LOG_DIR",
    "LOG_DIR_PATH",
    "LOG_FILE",
    "LOG_FILE_PATH",
]
