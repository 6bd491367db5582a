"""Flask application factory, logging setup and blueprint wiring."""
from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Mapping

from flask import Flask

import config as app_config
from db import utils as db_utils
from exports.assets import build_asset_fetcher
from helpers import utc_now
from init import initialize_app
from routes import sync as routes_sync

logger = logging.getLogger(__name__)


def _determine_log_level(flask_app: Flask) -> int:
    if flask_app.debug:
        return logging.DEBUG
    if os.environ.get('FLASK_DEBUG', '').lower() in {'1', 'true', 'yes', 'on'}:
        return logging.DEBUG
    return logging.INFO


def _configure_logging(flask_app: Flask, log_file: str) -> None:
    log_level = _determine_log_level(flask_app)
    log_path = Path(log_file)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    for handler in list(flask_app.logger.handlers):
        flask_app.logger.removeHandler(handler)

    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'standard': {
                    'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
                    'datefmt': '%Y-%m-%d %H:%M:%S',
                }
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'formatter': 'standard',
                    'level': log_level,
                    'stream': 'ext://sys.stdout',
                },
                'file': {
                    'class': 'logging.handlers.RotatingFileHandler',
                    'formatter': 'standard',
                    'level': logging.DEBUG,
                    'filename': os.fspath(log_path),
                    'maxBytes': 5 * 1024 * 1024,
                    'backupCount': 5,
                    'encoding': 'utf-8',
                },
            },
            'root': {
                'level': log_level,
                'handlers': ['console', 'file'],
            },
        }
    )

    flask_app.logger = logging.getLogger(flask_app.import_name)
    flask_app.logger.setLevel(log_level)


def configure_blueprints(flask_app: Flask, db_engine: db_utils.DatabaseEngine) -> None:
    settings = flask_app.config

    routes_sync.configure({
        'get_db': lambda: db_utils.get_db(lambda: db_engine),
        'asset_fetcher_factory': settings.get('ASSET_FETCHER_FACTORY') or build_asset_fetcher,
        'FLAT_FILE_DELIMITER': settings['FLAT_FILE_DELIMITER'],
        'FLAT_FILE_ENCODING': settings['FLAT_FILE_ENCODING'],
        'EXPORT_DIR': settings['EXPORT_DIR'],
        'now': utc_now,
    })

    if 'sync' not in flask_app.blueprints:
        flask_app.register_blueprint(routes_sync.sync_blueprint)


def create_app(
    config_overrides: Mapping[str, Any] | None = None,
    *,
    db_engine: db_utils.DatabaseEngine | None = None,
    configure_logging: bool = True,
) -> Flask:
    """Return a configured Flask application instance."""

    flask_app = Flask('app')
    flask_app.secret_key = app_config.APP_SECRET_KEY
    flask_app.config.update(
        DB_DSN=app_config.DB_DSN,
        LOG_FILE=app_config.LOG_FILE,
        EXPORT_DIR=app_config.EXPORT_DIR,
        FLAT_FILE_DELIMITER=app_config.FLAT_FILE_DELIMITER,
        FLAT_FILE_ENCODING=app_config.FLAT_FILE_ENCODING,
        ASSET_FETCHER_FACTORY=None,
    )
    if config_overrides:
        flask_app.config.update(config_overrides)

    if configure_logging:
        _configure_logging(flask_app, flask_app.config['LOG_FILE'])

    if db_engine is None:
        db_engine = initialize_app(
            dsn=flask_app.config['DB_DSN'],
            export_dir=flask_app.config['EXPORT_DIR'],
        )

    configure_blueprints(flask_app, db_engine)
    logger.info("Application configured with database %s", db_engine.engine.url)
    return flask_app
