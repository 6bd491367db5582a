"""Application startup orchestration helpers."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

from config import DB_CONNECT_TIMEOUT_SECONDS, DB_DSN, EXPORT_DIR
from db import utils as db_utils
from db.schema import create_schema

logger = logging.getLogger(__name__)


def ensure_dirs(*paths: str | os.PathLike[str]) -> None:
    for path in paths:
        Path(path).mkdir(parents=True, exist_ok=True)


def initialize_app(
    *,
    dsn: str = DB_DSN,
    export_dir: str | os.PathLike[str] = EXPORT_DIR,
    connection_factory: Callable[[str], db_utils.DatabaseEngine] | None = None,
) -> db_utils.DatabaseEngine:
    """Perform the core startup tasks required for the application.

    The initializer ensures the export directory exists, creates any missing
    catalog tables and installs the engine as the fallback connection used
    outside a Flask request.
    """

    ensure_dirs(export_dir)

    factory = connection_factory or (
        lambda value: db_utils.build_engine_from_dsn(
            value, timeout=DB_CONNECT_TIMEOUT_SECONDS
        )
    )
    engine = factory(dsn)
    try:
        create_schema(engine.engine)
    except Exception:
        logger.exception("Failed to prepare the catalog database")
        engine.dispose()
        raise

    db_utils.set_fallback_connection(engine)
    return engine


__all__ = ["ensure_dirs", "initialize_app"]
