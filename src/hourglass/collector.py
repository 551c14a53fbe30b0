"""Activity collector: the sampling loop that feeds the session builder."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .builder import SessionBuilder
from .categories import CategoryResolver
from .config import CollectorSettings
from .models import RawSample, Session
from .sampler import IdleDetector, WindowProbe, WindowSampler
from .writer import SessionWriter

logger = logging.getLogger(__name__)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class ActivityCollector:
    """Samples foreground activity at a fixed interval and persists sessions.

    Samples are processed one at a time on the collector thread; session
    writes are handed to a :class:`SessionWriter` thread so a slow store never
    delays the next poll. Stop signals (quit, sleep, lock) may arrive from any
    thread through :meth:`signal_stop`.
    """

    def __init__(
        self,
        db_path: Path,
        settings: CollectorSettings,
        *,
        resolver: Optional[CategoryResolver] = None,
        probe: Optional[WindowProbe] = None,
        idle_detector: Optional[IdleDetector] = None,
        clock: Callable[[], int] = _epoch_ms,
    ) -> None:
        self.db_path = Path(db_path)
        self.settings = settings
        if probe is None:
            from .sampler import WindowsActiveWindowProbe, WindowsIdleDetector

            probe = WindowsActiveWindowProbe()
            idle_detector = idle_detector or WindowsIdleDetector()
        self._clock = clock
        self._owns_resolver = resolver is None
        self._resolver = resolver or CategoryResolver(
            self.db_path, timeout=settings.store_timeout.total_seconds()
        )
        self._sampler = WindowSampler(
            probe, settings.sample_interval.total_seconds(), clock=clock
        )
        self._idle_detector = idle_detector
        self._writer = SessionWriter(self.db_path, settings)
        self._builder = SessionBuilder(
            settings,
            on_close=self._writer.submit,
            resolve_category=self._resolver.resolve,
        )
        self._is_idle = False
        self._last_checkpoint_ms: Optional[int] = None
        self._started = False

    @property
    def writer(self) -> SessionWriter:
        return self._writer

    @property
    def builder(self) -> SessionBuilder:
        return self._builder

    def start(self) -> None:
        if self._started:
            return
        self._writer.recover_checkpoint()
        self._writer.start()
        self._started = True

    def run_forever(self) -> None:
        stop_event = threading.Event()
        try:
            self.run_until_stopped(stop_event)
        except KeyboardInterrupt:
            logger.info("Collector interrupted; flushing open session.")

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """Run the collector until the provided event is set."""
        self.start()
        logger.info("Starting collector; writing to %s", self.db_path)
        try:
            for sample in self._sampler.iter_samples(stop_event):
                self.process_sample(sample)
        finally:
            self.shutdown()

    def process_sample(self, sample: RawSample) -> list[Session]:
        """Handle one sample; errors are logged and healed on the next tick."""
        try:
            if self._check_idle(sample.observed_at_ms):
                return []
            closed = self._builder.feed(sample)
            self._maybe_checkpoint(sample.observed_at_ms)
        except Exception:
            logger.exception("Failed to process sample at %d", sample.observed_at_ms)
            return []
        for session in closed:
            logger.debug(
                "Session closed: app=%s duration_ms=%d", session.app_key, session.duration_ms
            )
        return closed

    def signal_stop(self, reason: str = "stop") -> list[Session]:
        """Close the open session immediately (quit, sleep, lock)."""
        self._last_checkpoint_ms = None
        return self._builder.stop(self._clock(), reason=reason)

    def shutdown(self) -> None:
        try:
            self.signal_stop("shutdown")
        finally:
            self._writer.stop()
            self._started = False
            if self._owns_resolver:
                self._resolver.close()
            logger.info("Collector stopped.")

    def status(self) -> Dict[str, Any]:
        open_session = self._builder.open_session()
        return {
            "idle": self._is_idle,
            "open_session": (
                {
                    "app_key": open_session.app_key,
                    "title": open_session.title,
                    "started_at_ms": open_session.started_at_ms,
                    "duration_ms": open_session.duration_ms,
                }
                if open_session
                else None
            ),
            "store": self._writer.status(),
        }

    def _check_idle(self, now_ms: int) -> bool:
        if self._idle_detector is None:
            return False
        threshold_ms = int(self.settings.idle_threshold.total_seconds() * 1000)
        idle = self._idle_detector.is_idle(threshold_ms)
        if idle and not self._is_idle:
            logger.info("User idle; closing open session.")
            self._builder.stop(now_ms, reason="idle")
            self._last_checkpoint_ms = None
        elif not idle and self._is_idle:
            logger.info("User active again.")
        self._is_idle = idle
        return idle

    def _maybe_checkpoint(self, now_ms: int) -> None:
        if self._last_checkpoint_ms is None:
            self._last_checkpoint_ms = now_ms
            return
        if now_ms - self._last_checkpoint_ms < self.settings.checkpoint_interval_ms:
            return
        open_session = self._builder.open_session()
        if open_session is not None and open_session.duration_ms > 0:
            self._writer.checkpoint(open_session)
        self._last_checkpoint_ms = now_ms
