"""SQLite database layer for sessions, categories and overrides."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional

from .models import Category, Session

DEFAULT_TIMEOUT_SECONDS = 5.0


def open_database(
    path: Path,
    *,
    check_same_thread: bool = True,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
        timeout=timeout,
    )
    conn.row_factory = sqlite3.Row
    configure_durability(conn)
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path,
    *,
    check_same_thread: bool = True,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread, timeout=timeout)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def reader_connection(
    path: Path,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Iterator[sqlite3.Connection]:
    """Query-only connection for read paths; the schema must already exist."""
    conn = sqlite3.connect(path, isolation_level=None, timeout=timeout)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA query_only = ON;")
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(
    conn: sqlite3.Connection, *, begin: str = "BEGIN IMMEDIATE"
) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE``/``COMMIT`` on an autocommit connection.

    Pass ``begin="BEGIN"`` for a consistent read that takes no write lock.
    """
    conn.execute(begin)
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def configure_durability(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    # A committed session must survive a crash right after the call returns.
    conn.execute("PRAGMA synchronous = FULL;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL DEFAULT '',
            app_key TEXT NOT NULL,
            started_at_ms INTEGER NOT NULL,
            duration_ms INTEGER NOT NULL CHECK (duration_ms >= 0),
            category_id TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_started_at
            ON sessions(started_at_ms);

        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            color TEXT NOT NULL,
            is_custom INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS category_members (
            category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
            app_key TEXT NOT NULL,
            PRIMARY KEY (category_id, app_key)
        );

        CREATE TABLE IF NOT EXISTS category_overrides (
            app_key TEXT PRIMARY KEY,
            category_id TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS open_session (
            slot INTEGER PRIMARY KEY CHECK (slot = 1),
            id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            app_key TEXT NOT NULL,
            started_at_ms INTEGER NOT NULL,
            duration_ms INTEGER NOT NULL,
            category_id TEXT
        );
        """
    )


def insert_session(conn: sqlite3.Connection, session: Session) -> bool:
    """Persist one closed session. Returns False if the id was already stored.

    A checkpoint of the same session is cleared in the same transaction.
    """
    with transaction(conn):
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO sessions (
                id,
                title,
                app_key,
                started_at_ms,
                duration_ms,
                category_id
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            _session_params(session),
        )
        inserted = cur.rowcount > 0
        conn.execute("DELETE FROM open_session WHERE id = ?", (session.id,))
    return inserted


def fetch_sessions_between(
    conn: sqlite3.Connection, start_ms: int, end_ms: int
) -> list[Session]:
    """Return every session whose interval intersects ``[start_ms, end_ms)``."""
    rows = conn.execute(
        """
        SELECT id, title, app_key, started_at_ms, duration_ms, category_id
        FROM sessions
        WHERE started_at_ms < ? AND started_at_ms + duration_ms > ?
        ORDER BY started_at_ms, id;
        """,
        (end_ms, start_ms),
    ).fetchall()
    return [_row_to_session(row) for row in rows]


def fetch_detected_apps(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        """
        SELECT DISTINCT app_key
        FROM sessions
        WHERE app_key IS NOT NULL AND app_key != ''
        ORDER BY app_key;
        """
    ).fetchall()
    return [row["app_key"] for row in rows]


def count_sessions(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT COUNT(*) AS total FROM sessions").fetchone()
    return int(row["total"]) if row is not None else 0


def load_custom_categories(conn: sqlite3.Connection) -> dict[str, Category]:
    members: dict[str, set[str]] = {}
    for row in conn.execute("SELECT category_id, app_key FROM category_members"):
        members.setdefault(row["category_id"], set()).add(row["app_key"])

    rows = conn.execute(
        """
        SELECT id, name, description, color
        FROM categories
        WHERE is_custom = 1
        ORDER BY id;
        """
    ).fetchall()
    return {
        row["id"]: Category(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            color=row["color"],
            member_apps=frozenset(members.get(row["id"], ())),
            is_custom=True,
        )
        for row in rows
    }


def load_overrides(conn: sqlite3.Connection) -> dict[str, str]:
    rows = conn.execute(
        "SELECT app_key, category_id FROM category_overrides ORDER BY app_key"
    ).fetchall()
    return {row["app_key"]: row["category_id"] for row in rows}


def replace_category_state(
    conn: sqlite3.Connection,
    categories: Iterable[Category],
    overrides: Mapping[str, str],
) -> None:
    """Rewrite the category, membership and override tables.

    Must run inside :func:`transaction`; the caller reads and rewrites under the
    same write lock.
    """
    conn.execute("DELETE FROM category_overrides")
    conn.execute("DELETE FROM category_members")
    conn.execute("DELETE FROM categories")
    for category in categories:
        conn.execute(
            """
            INSERT INTO categories (id, name, description, color, is_custom)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                category.id,
                category.name,
                category.description,
                category.color,
                1 if category.is_custom else 0,
            ),
        )
        conn.executemany(
            "INSERT INTO category_members (category_id, app_key) VALUES (?, ?)",
            [(category.id, app_key) for app_key in sorted(category.member_apps)],
        )
    conn.executemany(
        "INSERT INTO category_overrides (app_key, category_id) VALUES (?, ?)",
        sorted(overrides.items()),
    )


def data_version(conn: sqlite3.Connection) -> int:
    """Counter that changes whenever another connection commits."""
    return int(conn.execute("PRAGMA data_version").fetchone()[0])


def save_checkpoint(conn: sqlite3.Connection, session: Session) -> None:
    """Record the still-open session so a crash loses at most one interval."""
    with transaction(conn):
        conn.execute(
            """
            INSERT INTO open_session (
                slot, id, title, app_key, started_at_ms, duration_ms, category_id
            ) VALUES (1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(slot) DO UPDATE SET
                id = excluded.id,
                title = excluded.title,
                app_key = excluded.app_key,
                started_at_ms = excluded.started_at_ms,
                duration_ms = excluded.duration_ms,
                category_id = excluded.category_id
            """,
            _session_params(session),
        )


def load_checkpoint(conn: sqlite3.Connection) -> Optional[Session]:
    row = conn.execute(
        """
        SELECT id, title, app_key, started_at_ms, duration_ms, category_id
        FROM open_session
        WHERE slot = 1
        """
    ).fetchone()
    return _row_to_session(row) if row is not None else None


def clear_checkpoint(conn: sqlite3.Connection) -> None:
    conn.execute("DELETE FROM open_session")


def promote_checkpoint(
    conn: sqlite3.Connection, min_duration_ms: int = 1
) -> Optional[Session]:
    """Move a leftover checkpoint into the sessions table, atomically."""
    with transaction(conn):
        session = load_checkpoint(conn)
        if session is None:
            return None
        if session.duration_ms >= max(min_duration_ms, 1):
            conn.execute(
                """
                INSERT OR IGNORE INTO sessions (
                    id, title, app_key, started_at_ms, duration_ms, category_id
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                _session_params(session),
            )
        conn.execute("DELETE FROM open_session")
    return session


def _session_params(session: Session) -> tuple[object, ...]:
    return (
        session.id,
        session.title,
        session.app_key,
        int(session.started_at_ms),
        int(session.duration_ms),
        session.category_id,
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=str(row["id"]),
        title=str(row["title"] or ""),
        app_key=str(row["app_key"]),
        started_at_ms=int(row["started_at_ms"]),
        duration_ms=int(row["duration_ms"]),
        category_id=row["category_id"],
    )
