from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from server.creditmeter.core.config import Settings

# Execution option read by the SQLite "begin" hook; write sessions take the
# database write lock up front so two writers never read the same balance.
_SQLITE_BEGIN_OPTION = "creditmeter_sqlite_begin"


class Base(DeclarativeBase):
    pass


@lru_cache(maxsize=8)
def _engine_for(db_url: str):
    connect_args = {}
    _ensure_db_parent_dir(db_url)
    if db_url.startswith("sqlite:"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    _configure_sqlite(engine, db_url)
    return engine


def get_engine(settings: Settings):
    return _engine_for(settings.db_url)


def get_sessionmaker(settings: Settings, *, write: bool = False):
    return _sessionmaker_for(settings.db_url, write)


@lru_cache(maxsize=16)
def _sessionmaker_for(db_url: str, write: bool):
    engine = _engine_for(db_url)
    if write:
        engine = engine.execution_options(**{_SQLITE_BEGIN_OPTION: "IMMEDIATE"})
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(settings: Settings) -> None:
    from server.creditmeter.core import models  # noqa: F401

    _ensure_db_parent_dir(settings.db_url)
    engine = get_engine(settings)
    Base.metadata.create_all(engine)


def _ensure_db_parent_dir(db_url: str) -> None:
    try:
        url = make_url(db_url)
    except Exception:
        return
    if url.drivername != "sqlite":
        return
    database = url.database
    if not database or database == ":memory:":
        return
    parent = os.path.dirname(database)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _configure_sqlite(engine, db_url: str) -> None:
    if not db_url.startswith("sqlite:"):
        return
    file_based = False
    try:
        url = make_url(db_url)
        file_based = bool(url.database) and url.database != ":memory:"
    except Exception:
        file_based = False

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record):
        # pysqlite's implicit BEGIN is disabled; the "begin" hook emits it instead.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            if file_based:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_sqlite_transaction(conn):
        mode = conn.get_execution_options().get(_SQLITE_BEGIN_OPTION, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


@contextmanager
def session_scope(settings: Settings, *, write: bool = False) -> Generator[Session, None, None]:
    SessionLocal = get_sessionmaker(settings, write=write)
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

