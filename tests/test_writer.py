from __future__ import annotations

import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from hourglass.config import CollectorSettings
from hourglass.db import count_sessions, database_connection, load_checkpoint
from hourglass.models import Session
from hourglass.writer import SessionWriter

SETTINGS = CollectorSettings(
    store_retries=2,
    store_backoff=timedelta(milliseconds=10),
    store_timeout=timedelta(seconds=1),
)


def _session(session_id: str, start_ms: int = 0) -> Session:
    return Session(
        id=session_id,
        title="Editor",
        app_key="code",
        started_at_ms=start_ms,
        duration_ms=1000,
    )


class SessionWriterTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.sleeps: list[float] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_writes_sessions_in_background(self) -> None:
        db_path = Path(self._tmp.name) / "activity.sqlite3"
        writer = SessionWriter(db_path, SETTINGS, sleep=self.sleeps.append)
        writer.start()
        try:
            writer.submit(_session("a", 0))
            writer.submit(_session("b", 1000))
            self.assertTrue(writer.drain(timeout=5))
        finally:
            writer.stop()

        with database_connection(db_path) as conn:
            self.assertEqual(count_sessions(conn), 2)
        self.assertFalse(writer.degraded)
        self.assertEqual(self.sleeps, [])

    def test_buffers_when_store_is_unavailable_then_recovers(self) -> None:
        data_dir = Path(self._tmp.name) / "not-yet-created"
        db_path = data_dir / "activity.sqlite3"
        writer = SessionWriter(db_path, SETTINGS, sleep=self.sleeps.append)
        writer.start()
        try:
            writer.submit(_session("a", 0))
            self.assertTrue(writer.drain(timeout=5))
            self.assertTrue(writer.degraded)
            self.assertEqual(writer.status()["buffered_sessions"], 1)
            self.assertIsNotNone(writer.last_error)
            # Two retries with doubling backoff.
            self.assertEqual(self.sleeps, [0.01, 0.02])

            data_dir.mkdir()
            writer.submit(_session("b", 1000))
            self.assertTrue(writer.drain(timeout=5))
            self.assertFalse(writer.degraded)
        finally:
            writer.stop()

        with database_connection(db_path) as conn:
            self.assertEqual(count_sessions(conn), 2)

    def test_checkpoint_and_recovery(self) -> None:
        db_path = Path(self._tmp.name) / "activity.sqlite3"
        writer = SessionWriter(db_path, SETTINGS, sleep=self.sleeps.append)
        writer.start()
        writer.checkpoint(_session("open"))
        self.assertTrue(writer.drain(timeout=5))
        writer.stop()

        with database_connection(db_path) as conn:
            self.assertIsNotNone(load_checkpoint(conn))

        restarted = SessionWriter(db_path, SETTINGS)
        recovered = restarted.recover_checkpoint()
        self.assertEqual(recovered.id, "open")
        with database_connection(db_path) as conn:
            self.assertEqual(count_sessions(conn), 1)
            self.assertIsNone(load_checkpoint(conn))


if __name__ == "__main__":
    unittest.main()
