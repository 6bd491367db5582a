"""Pytest fixtures shared across the test suite."""

import pytest

from db import utils as db_utils
from db.schema import create_schema
from tests.app_helpers import OWNER, seed_catalog


@pytest.fixture(autouse=True)
def reset_database_state():
    """Reset the fallback engine between tests."""

    db_utils.set_fallback_connection(None)
    yield
    db_utils.set_fallback_connection(None)


@pytest.fixture
def db_engine(tmp_path):
    engine_wrapper = db_utils.build_engine_from_dsn(
        f"sqlite:///{(tmp_path / 'catalog.db').as_posix()}"
    )
    create_schema(engine_wrapper.engine)
    yield engine_wrapper
    engine_wrapper.dispose()


@pytest.fixture
def engine(db_engine):
    return db_engine.engine


@pytest.fixture
def seeded_engine(engine):
    seed_catalog(engine, OWNER)
    return engine
