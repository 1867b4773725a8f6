from __future__ import annotations

import uuid
from collections.abc import Callable
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

_TERMINATE_SESSIONS = text(
    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity WHERE datname = :db_name AND pid <> pg_backend_pid()"
)


def _noop() -> None:
    return None


def provision_test_database(base_url: str, tmp_path: Path) -> tuple[str, Callable[[], None]]:
    """Return a fresh database URL for one test and a callable that removes it.

    A ``postgresql`` ``base_url`` gets a uniquely named sibling database so
    row locks and ``FOR UPDATE`` behave as in production; anything else falls
    back to a SQLite file under ``tmp_path``.
    """
    if not base_url.startswith("postgres"):
        return f"sqlite+pysqlite:///{tmp_path / 'stocklink.db'}", _noop

    url = make_url(base_url)
    db_name = f"stocklink_test_{uuid.uuid4().hex[:16]}"
    maintenance = create_engine(url.set(database="postgres"), isolation_level="AUTOCOMMIT", future=True)
    with maintenance.connect() as conn:
        conn.execute(text(f'CREATE DATABASE "{db_name}"'))

    def drop() -> None:
        with maintenance.connect() as conn:
            conn.execute(_TERMINATE_SESSIONS, {"db_name": db_name})
            conn.execute(text(f'DROP DATABASE IF EXISTS "{db_name}"'))
        maintenance.dispose()

    return url.set(database=db_name).render_as_string(hide_password=False), drop
