"""Configuration models and helpers for the activity engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class CollectorSettings:
    """Runtime configuration for sampling, session building and persistence."""

    sample_interval: timedelta = timedelta(seconds=1)
    switch_dwell: timedelta = timedelta(seconds=2)
    min_session: timedelta = timedelta(milliseconds=500)
    idle_threshold: timedelta = timedelta(minutes=5)
    sleep_gap: timedelta = timedelta(minutes=2)
    failure_tolerance: timedelta = timedelta(seconds=2)
    checkpoint_interval: timedelta = timedelta(seconds=30)
    store_timeout: timedelta = timedelta(seconds=5)
    store_retries: int = 3
    store_backoff: timedelta = timedelta(milliseconds=500)

    @classmethod
    def from_intervals(
        cls,
        sample_seconds: float,
        idle_minutes: float,
        dwell_samples: int = 2,
        min_session_ms: int = 500,
        checkpoint_seconds: float | None = None,
        sleep_gap_minutes: float | None = None,
    ) -> "CollectorSettings":
        checkpoint = (
            checkpoint_seconds
            if checkpoint_seconds is not None
            else max(sample_seconds * 30, 30.0)
        )
        sleep_gap = (
            sleep_gap_minutes if sleep_gap_minutes is not None else max(idle_minutes, 2.0)
        )
        return cls(
            sample_interval=timedelta(seconds=sample_seconds),
            switch_dwell=timedelta(seconds=sample_seconds * max(dwell_samples, 1)),
            min_session=timedelta(milliseconds=min_session_ms),
            idle_threshold=timedelta(minutes=idle_minutes),
            sleep_gap=timedelta(minutes=sleep_gap),
            checkpoint_interval=timedelta(seconds=checkpoint),
            failure_tolerance=timedelta(seconds=sample_seconds * 2),
        )

    @property
    def switch_dwell_ms(self) -> int:
        return _to_ms(self.switch_dwell)

    @property
    def min_session_ms(self) -> int:
        return _to_ms(self.min_session)

    @property
    def sleep_gap_ms(self) -> int:
        return _to_ms(self.sleep_gap)

    @property
    def failure_tolerance_ms(self) -> int:
        return _to_ms(self.failure_tolerance)

    @property
    def checkpoint_interval_ms(self) -> int:
        return _to_ms(self.checkpoint_interval)


def _to_ms(value: timedelta) -> int:
    return int(round(value.total_seconds() * 1000))
