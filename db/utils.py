"""Shared helpers for working with the game catalog database."""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Any, Callable

from flask import g, has_app_context
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from urllib.parse import unquote, urlparse


class DatabaseEngine:
    """Thin wrapper owning the SQLAlchemy engine for one database."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        """Return the underlying SQLAlchemy :class:`~sqlalchemy.engine.Engine`."""

        return self._engine

    def dispose(self) -> None:
        """Dispose the underlying engine's connection pool."""

        self._engine.dispose()


_fallback_connection: DatabaseEngine | None = None


def set_fallback_connection(conn: DatabaseEngine | None) -> None:
    """Configure the engine returned when no Flask app context is active."""

    global _fallback_connection
    _fallback_connection = conn


def _configure_sqlite_connection(conn: Any, *, busy_timeout: float | None = None) -> Any:
    """Apply timeout tuning and foreign-key enforcement to SQLite connections."""

    if not isinstance(conn, sqlite3.Connection):
        return conn

    busy_timeout_ms = None
    if busy_timeout is not None:
        busy_timeout_ms = int(max(busy_timeout, 0) * 1000)
        if busy_timeout_ms <= 0:
            busy_timeout_ms = None

    pragmas: tuple[tuple[str, str | int | None, bool], ...] = (
        ("foreign_keys", "ON", False),
        ("busy_timeout", busy_timeout_ms, False),
        ("journal_mode", "WAL", True),
    )

    for name, value, fetch_result in pragmas:
        if value is None:
            continue
        try:
            cursor = conn.execute(f"PRAGMA {name}={value}")
            if fetch_result:
                cursor.fetchone()
        except sqlite3.OperationalError:  # pragma: no cover - best effort only
            continue

    return conn


def _resolve_sqlite_path_from_dsn(dsn: str) -> str:
    """Extract a filesystem path from a ``sqlite:///`` DSN string."""

    parsed = urlparse(dsn)
    if parsed.scheme != "sqlite":
        raise ValueError(f"Unsupported DSN scheme for SQLite resolver: {parsed.scheme}")

    path = unquote(parsed.path or "")
    if parsed.netloc and parsed.netloc not in {"", "localhost"}:
        # Support UNC-like hosts by prefixing them to the path component.
        path = f"//{parsed.netloc}{path}"

    if not path:
        raise ValueError("SQLite DSN must include a filesystem path")

    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = candidate.resolve()
    return os.fspath(candidate)


def build_engine_from_dsn(
    dsn: str,
    *,
    timeout: float | None = None,
    pool_size: int = 5,
    pool_recycle: int = 1_800,
    pool_pre_ping: bool = True,
) -> DatabaseEngine:
    """Return a :class:`DatabaseEngine` configured from ``dsn``.

    SQLite engines hand transaction control to SQLAlchemy so that
    ``Connection.begin_nested()`` emits real savepoints, which the import
    merge relies on to roll back a single failing row.
    """

    parsed = urlparse(dsn)
    connect_args: dict[str, object] = {}
    effective_timeout = timeout if timeout is not None else 5.0

    if parsed.scheme == "sqlite":
        sqlite_path = _resolve_sqlite_path_from_dsn(dsn)
        normalized_dsn = f"sqlite:///{sqlite_path}"
        connect_args["check_same_thread"] = False
    else:
        normalized_dsn = dsn

    engine = create_engine(
        normalized_dsn,
        pool_size=pool_size,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        connect_args=connect_args,
    )

    if parsed.scheme == "sqlite":

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, connection_record):  # type: ignore[override]
            dbapi_conn.isolation_level = None
            _configure_sqlite_connection(dbapi_conn, busy_timeout=effective_timeout)

        @event.listens_for(engine, "begin")
        def _on_begin(conn):  # type: ignore[override]
            conn.exec_driver_sql("BEGIN")

    return DatabaseEngine(engine)


def get_db(
    connection_factory: Callable[[], DatabaseEngine] | None = None,
    *,
    context_key: str = 'db',
) -> DatabaseEngine:
    """Return the active :class:`DatabaseEngine`, creating one if necessary."""

    global _fallback_connection

    if has_app_context():
        if not hasattr(g, context_key):
            if connection_factory is not None:
                setattr(g, context_key, connection_factory())
            elif _fallback_connection is not None:
                setattr(g, context_key, _fallback_connection)
            else:
                raise RuntimeError('Database connection is not configured')
        value = getattr(g, context_key)
        if not isinstance(value, DatabaseEngine):
            raise RuntimeError('Database connection is not configured correctly')
        return value

    if _fallback_connection is None:
        if connection_factory is None:
            raise RuntimeError('Database connection is not configured')
        _fallback_connection = connection_factory()
    return _fallback_connection

