from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from cadence.config import get_settings
from cadence.models import Base

_lock = threading.Lock()
_ENGINES: dict[str, Engine] = {}
_SESSIONS: dict[str, sessionmaker[Session]] = {}


def _on_sqlite_connect(dbapi_conn, _record) -> None:
    # Let SQLAlchemy emit BEGIN itself so savepoints nest correctly under pysqlite
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def get_engine(db_url: str | None = None) -> Engine:
    target_url = db_url or get_settings().database_url
    with _lock:
        if target_url not in _ENGINES:
            is_sqlite = target_url.startswith("sqlite")
            connect_args = {"check_same_thread": False} if is_sqlite else {}
            engine = create_engine(target_url, connect_args=connect_args)
            if is_sqlite:
                event.listen(engine, "connect", _on_sqlite_connect)
                event.listen(engine, "begin", _on_sqlite_begin)
            _ENGINES[target_url] = engine
        return _ENGINES[target_url]


def get_session_factory(db_url: str | None = None) -> sessionmaker[Session]:
    target_url = db_url or get_settings().database_url
    engine = get_engine(target_url)
    with _lock:
        if target_url not in _SESSIONS:
            _SESSIONS[target_url] = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        return _SESSIONS[target_url]


def init_db(db_url: str | None = None) -> None:
    target_url = db_url or get_settings().database_url
    if target_url.startswith("sqlite:///") and ":memory:" not in target_url:
        Path(target_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(get_engine(target_url))


def dispose_engines() -> None:
    with _lock:
        for engine in _ENGINES.values():
            engine.dispose()
        _ENGINES.clear()
        _SESSIONS.clear()


@contextmanager
def session_scope(db_url: str | None = None) -> Iterator[Session]:
    """Context manager providing a transactional session scope.

    Usage (CLI, cron entry points, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session_factory(db_url)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
