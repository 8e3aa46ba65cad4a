"""SQLite engine policy and UTC timestamp helpers shared by the repository."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse an ISO timestamp (``Z`` accepted) into an aware UTC datetime.

    Naive input is taken as UTC, matching how values are written.
    """

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    return to_utc_aware(datetime.fromisoformat(text))


def to_utc_aware(value: datetime) -> datetime:
    """SQLite drops tzinfo on read; stored values are always UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_datetime(value: datetime) -> datetime:
    return to_utc_aware(value).replace(tzinfo=None)


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def ensure_db_parent(db_path: Path) -> None:
    """Create the database directory so a fresh ``--db-path`` just works."""

    db_path.expanduser().parent.mkdir(parents=True, exist_ok=True)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine shared by every repository call.

    Connections are not pooled: the poll thread and classifier workers each
    open their own, and WAL lets readers proceed while a tick commits.
    """

    ensure_db_parent(db_path)
    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _: object) -> None:
        _apply_sqlite_pragmas(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    return engine


def connect_sqlite_with_policy(*, db_path: Path, busy_timeout_ms: int) -> sqlite3.Connection:
    """Raw sqlite3 connection with the engine's pragmas and rows addressable by name."""

    ensure_db_parent(db_path)
    connection = sqlite3.connect(db_path, check_same_thread=False)
    _apply_sqlite_pragmas(connection, busy_timeout_ms=busy_timeout_ms)
    connection.row_factory = sqlite3.Row
    return connection


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
