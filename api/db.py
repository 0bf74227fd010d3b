from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from api.config.env import db_lock_timeout_seconds
from api.db_models import Base

log = logging.getLogger("timeledger.db")

_DEFAULT_SQLITE_PATH = "./state/timeledger.db"

_engine_lock = threading.Lock()
_engines: dict[str, Engine] = {}
_sessionmakers: dict[str, sessionmaker] = {}


def _resolve_url(sqlite_path: Optional[str] = None) -> str:
    if sqlite_path:
        return f"sqlite:///{sqlite_path}"
    url = (os.getenv("TL_DB_URL") or "").strip()
    if url:
        return url
    path = (os.getenv("TL_SQLITE_PATH") or _DEFAULT_SQLITE_PATH).strip()
    return f"sqlite:///{path}"


def _install_sqlite_hooks(engine: Engine, lock_timeout: float) -> None:
    """
    pysqlite defers BEGIN until the first write, which lets two aggregations
    read the same unbilled rows. Take the write lock at transaction start
    instead so the second caller waits, then sees the first caller's flags.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):  # pragma: no cover - driver hook
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys = ON")
        cur.execute(f"PRAGMA busy_timeout = {int(lock_timeout * 1000)}")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _server_connect_args(url: str, lock_timeout: float) -> dict:
    """Bound row-lock waits so a blocked FOR UPDATE surfaces as OperationalError."""
    ms = int(lock_timeout * 1000)
    if url.startswith("postgresql"):
        return {"options": f"-c lock_timeout={ms}"}
    if url.startswith("mysql") or url.startswith("mariadb"):
        return {"init_command": f"SET SESSION innodb_lock_wait_timeout = {max(1, ms // 1000)}"}
    return {}


def get_engine(sqlite_path: Optional[str] = None) -> Engine:
    url = _resolve_url(sqlite_path)
    with _engine_lock:
        engine = _engines.get(url)
        if engine is not None:
            return engine

        if url.startswith("sqlite"):
            lock_timeout = db_lock_timeout_seconds()
            db_file = url.split("sqlite:///", 1)[-1]
            if db_file and db_file != ":memory:":
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": lock_timeout},
            )
            _install_sqlite_hooks(engine, lock_timeout)
        else:
            engine = create_engine(
                url,
                pool_pre_ping=True,
                connect_args=_server_connect_args(url, db_lock_timeout_seconds()),
            )

        _engines[url] = engine
        log.info("db_engine_created dialect=%s", engine.dialect.name)
        return engine


def get_sessionmaker(sqlite_path: Optional[str] = None) -> sessionmaker:
    url = _resolve_url(sqlite_path)
    engine = get_engine(sqlite_path)
    with _engine_lock:
        maker = _sessionmakers.get(url)
        if maker is None:
            maker = sessionmaker(
                bind=engine,
                autoflush=False,
                expire_on_commit=False,
            )
            _sessionmakers[url] = maker
        return maker


def reset_engine_cache() -> None:
    """Dispose cached engines; tests call this between sqlite files."""
    with _engine_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()
        _sessionmakers.clear()


def init_db(sqlite_path: Optional[str] = None) -> None:
    Base.metadata.create_all(bind=get_engine(sqlite_path))


def get_db() -> Iterator[Session]:
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
