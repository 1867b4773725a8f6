import time
from contextvars import ContextVar

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.stocklink.core.config import settings

_query_time_ms: ContextVar[float | None] = ContextVar("query_time_ms", default=None)


def begin_query_timer() -> object:
    return _query_time_ms.set(0.0)


def end_query_timer(token: object) -> None:
    _query_time_ms.reset(token)


def current_query_time_ms() -> float | None:
    return _query_time_ms.get()


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 15}
    return create_engine(database_url, echo=False, future=True, connect_args=connect_args)


engine = build_engine(settings.DATABASE_URL)


@event.listens_for(engine, "before_cursor_execute")
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    if _query_time_ms.get() is None:
        return
    conn.info["query_start_time"] = time.perf_counter()


@event.listens_for(engine, "after_cursor_execute")
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    current = _query_time_ms.get()
    if current is None:
        return
    start = conn.info.pop("query_start_time", None)
    if start is None:
        return
    _query_time_ms.set(current + (time.perf_counter() - start) * 1000)


SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
