"""SQLite engine and timestamp helpers shared by the workflow store."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# WAL lets a reconciling CLI read while another process holds a write lock.
_STATIC_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
    "PRAGMA synchronous = NORMAL",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_utc_aware_datetime(value: datetime) -> datetime:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for the workflow DB, creating its parent directory if needed.

    Every connection gets the same busy timeout and pragmas, so concurrent
    CLI invocations wait for each other instead of failing on a locked DB.
    """

    db_path.expanduser().parent.mkdir(parents=True, exist_ok=True)
    timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path.expanduser()}",
        connect_args={"check_same_thread": False, "timeout": timeout_ms / 1000.0},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in _STATIC_PRAGMAS:
                cursor.execute(pragma)
            cursor.execute(f"PRAGMA busy_timeout = {timeout_ms}")
        finally:
            cursor.close()

    return engine
