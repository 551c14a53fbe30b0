from __future__ import annotations

import sqlite3
import tempfile
import unittest
from pathlib import Path

from hourglass.db import (
    count_sessions,
    database_connection,
    fetch_detected_apps,
    fetch_sessions_between,
    insert_session,
    load_checkpoint,
    promote_checkpoint,
    reader_connection,
    save_checkpoint,
)
from hourglass.models import Session


def _session(session_id: str, app_key: str, start_ms: int, duration_ms: int) -> Session:
    return Session(
        id=session_id,
        title=f"{app_key} window",
        app_key=app_key,
        started_at_ms=start_ms,
        duration_ms=duration_ms,
    )


class DatabaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "activity.sqlite3"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_insert_is_idempotent_per_id(self) -> None:
        with database_connection(self.db_path) as conn:
            self.assertTrue(insert_session(conn, _session("s1", "code", 0, 1000)))
            self.assertFalse(insert_session(conn, _session("s1", "code", 0, 1000)))
            self.assertEqual(count_sessions(conn), 1)

    def test_fetch_returns_intersecting_sessions(self) -> None:
        with database_connection(self.db_path) as conn:
            insert_session(conn, _session("before", "code", 0, 1000))
            insert_session(conn, _session("touching", "code", 1000, 1000))
            insert_session(conn, _session("spanning", "slack", 1500, 5000))
            insert_session(conn, _session("after", "code", 10_000, 1000))

            rows = fetch_sessions_between(conn, 2000, 4000)

        self.assertEqual([row.id for row in rows], ["spanning"])

    def test_detected_apps_are_distinct_and_sorted(self) -> None:
        with database_connection(self.db_path) as conn:
            insert_session(conn, _session("a", "slack", 0, 1000))
            insert_session(conn, _session("b", "chrome", 1000, 1000))
            insert_session(conn, _session("c", "slack", 2000, 1000))
            self.assertEqual(fetch_detected_apps(conn), ["chrome", "slack"])

    def test_checkpoint_is_promoted_once(self) -> None:
        with database_connection(self.db_path) as conn:
            save_checkpoint(conn, _session("open", "code", 0, 30_000))
            save_checkpoint(conn, _session("open", "code", 0, 60_000))

            recovered = promote_checkpoint(conn)
            self.assertEqual(recovered.duration_ms, 60_000)
            self.assertIsNone(load_checkpoint(conn))
            self.assertIsNone(promote_checkpoint(conn))
            self.assertEqual(count_sessions(conn), 1)

    def test_closing_a_session_clears_its_checkpoint(self) -> None:
        with database_connection(self.db_path) as conn:
            save_checkpoint(conn, _session("open", "code", 0, 30_000))
            insert_session(conn, _session("open", "code", 0, 45_000))
            self.assertIsNone(load_checkpoint(conn))

    def test_committed_sessions_are_visible_to_new_connections(self) -> None:
        with database_connection(self.db_path) as conn:
            insert_session(conn, _session("s1", "code", 0, 1000))
        with database_connection(self.db_path) as conn:
            self.assertEqual(count_sessions(conn), 1)

    def test_reader_connection_is_query_only(self) -> None:
        with database_connection(self.db_path) as conn:
            insert_session(conn, _session("s1", "code", 0, 1000))

        with reader_connection(self.db_path, timeout=0.5) as conn:
            self.assertEqual([s.id for s in fetch_sessions_between(conn, 0, 5000)], ["s1"])
            with self.assertRaises(sqlite3.OperationalError):
                insert_session(conn, _session("s2", "code", 1000, 1000))

        with database_connection(self.db_path) as conn:
            self.assertEqual(count_sessions(conn), 1)


if __name__ == "__main__":
    unittest.main()
