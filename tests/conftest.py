import importlib
import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from alembic import command
from alembic.config import Config

from tests.db_utils import provision_test_database

# Captured before any fixture points DATABASE_URL at a per-test database.
BASE_DATABASE_URL = os.getenv("DATABASE_URL", "")


def _setup_app(database_url: str):
    os.environ["DATABASE_URL"] = database_url

    import app.stocklink.core.config as config
    import app.stocklink.db.session as session
    import app.main as main

    importlib.reload(config)
    importlib.reload(session)
    importlib.reload(main)

    return main.create_app(), session


def _run_migrations(database_url: str):
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", database_url)
    config.attributes["skip_logging_config"] = True
    command.upgrade(config, "head")


@pytest.fixture()
def client(tmp_path: Path):
    database_url, drop_database = provision_test_database(BASE_DATABASE_URL, tmp_path)
    _run_migrations(database_url)
    app, session = _setup_app(database_url)

    with TestClient(app) as test_client:
        yield test_client

    session.engine.dispose()
    drop_database()


def _session_factory():
    from app.stocklink.db.session import SessionLocal

    return SessionLocal


@pytest.fixture()
def db_session(client):
    db = _session_factory()()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def other_session(client):
    """A second, independent session for interleaving concurrent writers."""
    db = _session_factory()()
    try:
        yield db
    finally:
        db.close()
