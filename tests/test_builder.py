from __future__ import annotations

import random
import unittest
from datetime import timedelta

from hourglass.builder import (
    IDLE,
    PendingSwitch,
    SessionBuilder,
    Tracking,
    advance,
)
from hourglass.config import CollectorSettings
from hourglass.models import RawSample, Session

SETTINGS = CollectorSettings(
    sample_interval=timedelta(seconds=1),
    switch_dwell=timedelta(seconds=2),
    min_session=timedelta(milliseconds=500),
    sleep_gap=timedelta(minutes=2),
)


def _sample(seconds: float, app_key: str | None, error: str | None = None) -> RawSample:
    return RawSample(
        observed_at_ms=int(seconds * 1000),
        window_id=1,
        title=f"{app_key} window" if app_key else None,
        app_key=app_key,
        error=error,
    )


def _advance(state, sample: RawSample, dwell_ms: int = 2000):
    return advance(
        state, sample, dwell_ms=dwell_ms, sleep_gap_ms=120000, failure_tolerance_ms=2000
    )


class TransitionTests(unittest.TestCase):
    def test_first_sample_starts_tracking(self) -> None:
        transition = _advance(IDLE, _sample(0, "code"))
        self.assertIsInstance(transition.state, Tracking)
        self.assertEqual(transition.state.current.started_at_ms, 0)
        self.assertEqual(transition.closed, ())

    def test_new_app_enters_pending_switch(self) -> None:
        state = _advance(IDLE, _sample(0, "code")).state
        transition = _advance(state, _sample(1, "slack"))
        self.assertIsInstance(transition.state, PendingSwitch)
        self.assertEqual(transition.state.candidate.app_key, "slack")
        self.assertEqual(transition.closed, ())

    def test_zero_dwell_switches_immediately(self) -> None:
        state = _advance(IDLE, _sample(0, "code"), dwell_ms=0).state
        transition = _advance(state, _sample(1, "slack"), dwell_ms=0)
        self.assertIsInstance(transition.state, Tracking)
        self.assertEqual(len(transition.closed), 1)
        self.assertEqual(transition.closed[0].duration_ms, 1000)

    def test_error_within_tolerance_leaves_state_untouched(self) -> None:
        state = _advance(IDLE, _sample(0, "code")).state
        transition = _advance(state, _sample(2, None, error="window lookup failed"))
        self.assertEqual(transition.state, state)
        self.assertEqual(transition.closed, ())

    def test_error_past_tolerance_closes_at_last_seen(self) -> None:
        state = _advance(IDLE, _sample(0, "code")).state
        state = _advance(state, _sample(1, "code")).state
        transition = _advance(state, _sample(4, None, error="window lookup failed"))
        self.assertIs(transition.state, IDLE)
        self.assertEqual(len(transition.closed), 1)
        self.assertEqual(transition.closed[0].ended_at_ms, 1000)


class SessionBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.closed: list[Session] = []
        self.builder = SessionBuilder(SETTINGS, on_close=self.closed.append)

    def _feed(self, apps: list[str], start: int = 0) -> None:
        for offset, app_key in enumerate(apps):
            self.builder.feed(_sample(start + offset, app_key))

    def test_flicker_is_absorbed_into_one_session(self) -> None:
        self._feed(["chrome"] * 5 + ["slack"] + ["chrome"] * 5)
        self.builder.stop(10_000)

        self.assertEqual(len(self.closed), 1)
        self.assertEqual(self.closed[0].app_key, "chrome")
        self.assertEqual(self.closed[0].started_at_ms, 0)
        self.assertEqual(self.closed[0].duration_ms, 10_000)

    def test_stable_switch_closes_at_first_sighting(self) -> None:
        self._feed(["chrome"] * 5 + ["slack"] * 5)
        self.assertEqual(len(self.closed), 1)
        self.assertEqual(self.closed[0].duration_ms, 5_000)

        self.builder.stop(9_000)
        self.assertEqual([s.app_key for s in self.closed], ["chrome", "slack"])
        self.assertEqual(self.closed[1].started_at_ms, 5_000)
        self.assertEqual(self.closed[1].duration_ms, 4_000)

    def test_third_app_replaces_pending_candidate(self) -> None:
        self._feed(["chrome"] * 5 + ["slack"] + ["code"] * 3)
        self.assertEqual(len(self.closed), 1)
        self.assertEqual(self.closed[0].app_key, "chrome")
        self.assertEqual(self.closed[0].duration_ms, 6_000)
        self.assertEqual(self.builder.state.current.app_key, "code")

    def test_stop_during_pending_switch_keeps_all_time(self) -> None:
        self._feed(["chrome"] * 5 + ["slack"])
        self.builder.stop(6_000)

        self.assertEqual([s.app_key for s in self.closed], ["chrome", "slack"])
        self.assertEqual(self.closed[0].duration_ms, 5_000)
        self.assertEqual(self.closed[1].duration_ms, 1_000)
        self.assertIs(self.builder.state, IDLE)

    def test_short_sessions_are_discarded(self) -> None:
        self.builder.feed(_sample(0, "chrome"))
        discarded = self.builder.stop(200)
        self.assertEqual(discarded, [])
        self.assertEqual(self.closed, [])

    def test_long_gap_closes_at_last_sample(self) -> None:
        self._feed(["chrome", "chrome"])
        self.builder.feed(_sample(300, "chrome"))

        self.assertEqual(len(self.closed), 1)
        self.assertEqual(self.closed[0].duration_ms, 1_000)
        self.assertEqual(self.builder.state.current.started_at_ms, 300_000)

    def test_brief_sampling_failure_does_not_split_session(self) -> None:
        self.builder.feed(_sample(0, "chrome"))
        self.builder.feed(_sample(1, None, error="window lookup failed"))
        self.builder.feed(_sample(2, "chrome"))
        self.builder.stop(2_000)
        self.assertEqual(len(self.closed), 1)
        self.assertEqual(self.closed[0].duration_ms, 2_000)

    def test_long_sampling_failure_leaves_a_gap(self) -> None:
        self._feed(["chrome"] * 6)
        for second in range(6, 90):
            self.builder.feed(_sample(second, None, error="window lookup failed"))
        self._feed(["chrome"] * 6, start=90)
        self.builder.stop(95_000)

        self.assertEqual(
            [(s.started_at_ms, s.duration_ms) for s in self.closed],
            [(0, 5_000), (90_000, 5_000)],
        )

    def test_category_is_stamped_at_close(self) -> None:
        builder = SessionBuilder(
            SETTINGS, on_close=self.closed.append, resolve_category=lambda app: f"cat-{app}"
        )
        builder.feed(_sample(0, "chrome"))
        builder.stop(3_000)
        self.assertEqual(self.closed[0].category_id, "cat-chrome")

    def test_open_session_reports_current_progress(self) -> None:
        self._feed(["chrome"] * 4)
        open_session = self.builder.open_session()
        self.assertIsNotNone(open_session)
        self.assertEqual(open_session.duration_ms, 3_000)
        self.assertEqual(self.closed, [])

    def test_persisted_time_matches_wall_clock(self) -> None:
        rng = random.Random(7)
        apps: list[str] = []
        while len(apps) < 400:
            app_key = rng.choice(["chrome", "slack", "code"])
            apps.extend([app_key] * rng.randint(1, 12))
        self._feed(apps)
        self.builder.stop((len(apps) - 1) * 1000)

        total = sum(session.duration_ms for session in self.closed)
        self.assertEqual(total, (len(apps) - 1) * 1000)
        for earlier, later in zip(self.closed, self.closed[1:]):
            self.assertEqual(earlier.ended_at_ms, later.started_at_ms)


if __name__ == "__main__":
    unittest.main()
