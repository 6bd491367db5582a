"""Catalog synchronization API routes."""

from __future__ import annotations

import json
from typing import Any, Mapping

from flask import Blueprint, Response, jsonify, request

from exports.archive import export_archive, sync_to_directory
from helpers import _parse_bool
from routes.api_utils import BadRequestError, current_owner_id, handle_api_errors
from sync.selective import (
    parse_export_config,
    parse_import_config,
    parse_per_game_export_configs,
    parse_per_game_import_configs,
)
from sync.service import export_all, export_selective, import_all, import_selective

sync_blueprint = Blueprint("sync", __name__, url_prefix="/api/sync")

_context: dict[str, Any] = {}

CSV_MIMETYPE = "text/csv"
ZIP_MIMETYPE = "application/zip"


def configure(context: Mapping[str, Any]) -> None:
    """Inject the database accessor and asset fetcher factory."""
    _context.update(context)


def _ctx(key: str) -> Any:
    if key not in _context:
        raise RuntimeError(f"sync routes missing context value: {key}")
    return _context[key]


def _engine():
    return _ctx("get_db")().engine


def _fetcher():
    factory = _context.get("asset_fetcher_factory")
    return factory() if factory is not None else None


def _csv_response(data: bytes, file_name: str) -> Response:
    encoding = _ctx("FLAT_FILE_ENCODING")
    response = Response(data, mimetype=CSV_MIMETYPE)
    response.headers["Content-Type"] = f"{CSV_MIMETYPE}; charset={encoding}"
    response.headers["Content-Disposition"] = f'attachment; filename="{file_name}"'
    return response


def _uploaded_bytes() -> bytes:
    storage = request.files.get("file")
    if storage is not None:
        data = storage.read()
    elif request.files:
        raise BadRequestError("Upload the flat file in the 'file' field.")
    else:
        data = request.get_data(cache=False)
    if not data:
        raise BadRequestError("No file uploaded.")
    return data


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequestError("Expected a JSON object body.")
    return payload


def _config_field(name: str) -> Any:
    raw = request.form.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BadRequestError(f"'{name}' must be valid JSON.") from exc


def _game_ids(raw: Any) -> list[int]:
    if not isinstance(raw, list):
        raise BadRequestError("'gameIds' must be a list of game ids.")
    ids: list[int] = []
    for value in raw:
        try:
            ids.append(int(value))
        except (TypeError, ValueError) as exc:
            raise BadRequestError(f"Invalid game id: {value!r}") from exc
    return ids


def _export_file_name(prefix: str) -> str:
    stamp = _ctx("now")().strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{stamp}.csv"


@sync_blueprint.route("/export", methods=["GET"])
@handle_api_errors
def api_export_all():
    owner_id = current_owner_id()
    data = export_all(
        _engine(),
        owner_id,
        delimiter=_ctx("FLAT_FILE_DELIMITER"),
        encoding=_ctx("FLAT_FILE_ENCODING"),
    )
    return _csv_response(data, _export_file_name("games_export"))


@sync_blueprint.route("/import", methods=["POST"])
@handle_api_errors
def api_import_all():
    owner_id = current_owner_id()
    result = import_all(
        _engine(),
        owner_id,
        _uploaded_bytes(),
        delimiter=_ctx("FLAT_FILE_DELIMITER"),
        encoding=_ctx("FLAT_FILE_ENCODING"),
    )
    payload = result.to_dict()
    payload["message"] = (
        f"Import finished: {result.total_inserted} inserted, "
        f"{result.total_updated} updated, {len(result.errors)} errors"
    )
    return jsonify(payload)


@sync_blueprint.route("/archive", methods=["GET"])
@handle_api_errors
def api_export_archive():
    owner_id = current_owner_id()
    full = _parse_bool(request.args.get("full"), False)
    result = export_archive(
        _engine(),
        owner_id,
        full=full,
        fetcher=_fetcher(),
        delimiter=_ctx("FLAT_FILE_DELIMITER"),
        encoding=_ctx("FLAT_FILE_ENCODING"),
    )
    stats = result.stats
    response = Response(result.archive_bytes, mimetype=ZIP_MIMETYPE)
    response.headers["Content-Disposition"] = f'attachment; filename="{result.file_name}"'
    response.headers["X-Export-Total-Games"] = str(stats.total_games)
    response.headers["X-Export-Games-Exported"] = str(stats.games_exported)
    response.headers["X-Export-Games-Skipped"] = str(stats.games_skipped)
    response.headers["X-Export-Images-Downloaded"] = str(stats.images_downloaded)
    response.headers["X-Export-Images-Failed"] = str(stats.images_failed)
    return response


@sync_blueprint.route("/directory", methods=["POST"])
@handle_api_errors
def api_sync_directory():
    owner_id = current_owner_id()
    full = _parse_bool(request.args.get("full"), False)
    stats = sync_to_directory(
        _engine(),
        owner_id,
        _ctx("EXPORT_DIR"),
        full=full,
        fetcher=_fetcher(),
        delimiter=_ctx("FLAT_FILE_DELIMITER"),
        encoding=_ctx("FLAT_FILE_ENCODING"),
    )
    return jsonify(stats.to_dict())


@sync_blueprint.route("/export/selective", methods=["POST"])
@handle_api_errors
def api_export_selective():
    owner_id = current_owner_id()
    body = _json_body()
    game_ids = _game_ids(body.get("gameIds"))
    if not game_ids:
        raise BadRequestError("Select at least one game to export.")
    data = export_selective(
        _engine(),
        owner_id,
        game_ids,
        parse_export_config(body.get("globalConfig")),
        parse_per_game_export_configs(body.get("perGameConfig")),
        delimiter=_ctx("FLAT_FILE_DELIMITER"),
        encoding=_ctx("FLAT_FILE_ENCODING"),
    )
    return _csv_response(data, _export_file_name("games_selective_export"))


@sync_blueprint.route("/import/selective", methods=["POST"])
@handle_api_errors
def api_import_selective():
    owner_id = current_owner_id()
    storage = request.files.get("file")
    if storage is None:
        raise BadRequestError("No file uploaded.")
    data = storage.read()
    if not data:
        raise BadRequestError("No file uploaded.")
    result = import_selective(
        _engine(),
        owner_id,
        data,
        parse_import_config(_config_field("globalConfig")),
        parse_per_game_import_configs(_config_field("perGameConfig")),
        delimiter=_ctx("FLAT_FILE_DELIMITER"),
        encoding=_ctx("FLAT_FILE_ENCODING"),
    )
    return jsonify(result.to_dict())


__all__ = ["configure", "sync_blueprint"]
