"""Serialized, retrying writer that moves closed sessions into SQLite."""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .config import CollectorSettings
from .db import database_connection, insert_session, promote_checkpoint, save_checkpoint
from .errors import StoreUnavailable
from .models import Session

logger = logging.getLogger(__name__)

_SESSION = "session"
_CHECKPOINT = "checkpoint"
_BARRIER = "barrier"

_Job = tuple[str, Union[Session, threading.Event]]


class SessionWriter:
    """Single background thread that owns every session write.

    Writes never run on the sampling thread. Each session is retried with
    exponential backoff; when retries run out it is kept in an in-memory
    backlog that is retried before the next write and on shutdown.
    """

    def __init__(
        self,
        db_path: Path,
        settings: CollectorSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = Path(db_path)
        self.settings = settings
        self._sleep = sleep
        self._queue: "queue.Queue[Optional[_Job]]" = queue.Queue()
        self._backlog: deque[Session] = deque()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._last_error: Optional[StoreUnavailable] = None
        self._written = 0

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="hourglass-writer", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout=timeout)
        if self._backlog:
            logger.error(
                "Writer stopped with %d unsaved session(s) in memory.", len(self._backlog)
            )

    def submit(self, session: Session) -> None:
        self._queue.put((_SESSION, session))

    def checkpoint(self, session: Session) -> None:
        self._queue.put((_CHECKPOINT, session))

    def drain(self, timeout: float = 10.0) -> bool:
        """Block until every job queued so far has been processed."""
        done = threading.Event()
        self._queue.put((_BARRIER, done))
        return done.wait(timeout)

    def recover_checkpoint(self) -> Optional[Session]:
        """Persist a checkpoint left behind by a crash. Runs synchronously."""
        try:
            with self._connect() as conn:
                session = promote_checkpoint(conn, self.settings.min_session_ms)
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Could not recover checkpointed session: %s", exc)
            return None
        if session is not None:
            logger.info(
                "Recovered %d ms of %s from a previous run.",
                session.duration_ms,
                session.app_key,
            )
        return session

    @property
    def degraded(self) -> bool:
        return bool(self._backlog)

    @property
    def last_error(self) -> Optional[StoreUnavailable]:
        return self._last_error

    def status(self) -> Dict[str, Any]:
        return {
            "degraded": self.degraded,
            "buffered_sessions": len(self._backlog),
            "written_sessions": self._written,
            "last_error": str(self._last_error) if self._last_error else None,
        }

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    self._retry_backlog()
                    return
                kind, payload = job
                if kind == _BARRIER:
                    payload.set()  # type: ignore[union-attr]
                elif kind == _CHECKPOINT:
                    self._write_checkpoint(payload)  # type: ignore[arg-type]
                else:
                    self._write(payload)  # type: ignore[arg-type]
            except Exception:  # pragma: no cover - keeps the writer thread alive
                logger.exception("Unexpected failure in session writer.")
            finally:
                self._queue.task_done()

    def _write(self, session: Session) -> None:
        self._retry_backlog()
        if self._backlog:
            # Store is still down; keep chronological order in the backlog.
            self._backlog.append(session)
            return

        attempts = self.settings.store_retries + 1
        delay = self.settings.store_backoff.total_seconds()
        for attempt in range(1, attempts + 1):
            try:
                self._insert(session)
                return
            except StoreUnavailable as exc:
                self._last_error = exc
                logger.warning(
                    "Session write failed (attempt %d/%d): %s", attempt, attempts, exc
                )
                if attempt < attempts:
                    self._sleep(delay)
                    delay *= 2

        self._backlog.append(session)
        logger.error(
            "Store unavailable; buffering session %s in memory (%d buffered).",
            session.id,
            len(self._backlog),
        )

    def _retry_backlog(self) -> None:
        if not self._backlog:
            return
        while self._backlog:
            try:
                self._insert(self._backlog[0])
            except StoreUnavailable as exc:
                self._last_error = exc
                logger.debug("Backlog retry failed: %s", exc)
                return
            self._backlog.popleft()
        self._last_error = None
        logger.info("Store available again; backlog flushed.")

    def _insert(self, session: Session) -> None:
        try:
            with self._connect() as conn:
                insert_session(conn, session)
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(str(exc)) from exc
        self._written += 1
        logger.debug(
            "Persisted session %s (%s, %d ms).",
            session.id,
            session.app_key,
            session.duration_ms,
        )

    def _write_checkpoint(self, session: Session) -> None:
        try:
            with self._connect() as conn:
                save_checkpoint(conn, session)
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Checkpoint of session %s failed: %s", session.id, exc)

    def _connect(self):
        return database_connection(
            self.db_path,
            check_same_thread=False,
            timeout=self.settings.store_timeout.total_seconds(),
        )
