from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from hourglass.aggregation import (
    DAY_MS,
    Aggregator,
    category_totals,
    clip_sessions,
    rail_segments,
)
from hourglass.categories import MISCELLANEOUS, CategoryResolver, CategoryState
from hourglass.db import database_connection, insert_session
from hourglass.models import Session

HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000
DAY_START = 1_700_000_000_000 - (1_700_000_000_000 % DAY_MS)


def _session(session_id: str, app_key: str, start_ms: int, duration_ms: int) -> Session:
    return Session(
        id=session_id,
        title=f"{app_key} window",
        app_key=app_key,
        started_at_ms=start_ms,
        duration_ms=duration_ms,
    )


class PureAggregationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = CategoryState.build({}, {})

    def _intervals(self, sessions: list[Session]):
        return clip_sessions(sessions, self.state, DAY_START, DAY_START + DAY_MS)

    def test_breakdown_and_rail_for_two_half_hours(self) -> None:
        nine = DAY_START + 9 * HOUR_MS
        intervals = self._intervals(
            [
                _session("a", "chrome", nine, 30 * MINUTE_MS),
                _session("b", "slack", nine + 30 * MINUTE_MS, 30 * MINUTE_MS),
            ]
        )

        totals = category_totals(intervals, self.state)
        self.assertEqual(
            [(total.category_id, total.total_ms) for total in totals],
            [("browsers", 1_800_000), ("social", 1_800_000)],
        )
        self.assertEqual(totals[0].color, self.state.color_for("browsers"))

        segments = rail_segments(intervals, self.state)
        self.assertEqual(len(segments), 2)
        self.assertEqual(segments[0].segment_end_ms, nine + 30 * MINUTE_MS)
        self.assertEqual(segments[0].duration_ms, 30 * MINUTE_MS)
        self.assertEqual([c for c, _ in segments[0].categories], ["browsers"])
        self.assertEqual(segments[1].segment_end_ms, nine + HOUR_MS)
        self.assertEqual([c for c, _ in segments[1].categories], ["social"])

    def test_sessions_are_clipped_to_the_day(self) -> None:
        intervals = self._intervals(
            [
                _session("late", "chrome", DAY_START - HOUR_MS, 2 * HOUR_MS),
                _session("spill", "slack", DAY_START + DAY_MS - HOUR_MS, 3 * HOUR_MS),
                _session("outside", "code", DAY_START + DAY_MS, HOUR_MS),
            ]
        )
        totals = {t.category_id: t.total_ms for t in category_totals(intervals, self.state)}
        self.assertEqual(totals, {"browsers": HOUR_MS, "social": HOUR_MS})

    def test_overlaps_become_multi_category_segments(self) -> None:
        intervals = self._intervals(
            [
                _session("a", "chrome", DAY_START, 20 * MINUTE_MS),
                _session("b", "slack", DAY_START + 10 * MINUTE_MS, 20 * MINUTE_MS),
            ]
        )
        segments = rail_segments(intervals, self.state)
        self.assertEqual(
            [([c for c, _ in s.categories], s.duration_ms) for s in segments],
            [
                (["browsers"], 10 * MINUTE_MS),
                (["browsers", "social"], 10 * MINUTE_MS),
                (["social"], 10 * MINUTE_MS),
            ],
        )
        self.assertEqual(segments[1].segment_start_ms, DAY_START + 10 * MINUTE_MS)

    def test_gaps_are_omitted_and_equal_neighbours_merge(self) -> None:
        intervals = self._intervals(
            [
                _session("a", "chrome", DAY_START, MINUTE_MS),
                _session("b", "firefox", DAY_START + MINUTE_MS, MINUTE_MS),
                _session("c", "chrome", DAY_START + 10 * MINUTE_MS, MINUTE_MS),
            ]
        )
        segments = rail_segments(intervals, self.state)
        self.assertEqual([s.duration_ms for s in segments], [2 * MINUTE_MS, MINUTE_MS])
        self.assertEqual(segments[1].segment_start_ms, DAY_START + 10 * MINUTE_MS)

    def test_rail_total_matches_breakdown_without_overlap(self) -> None:
        sessions = [
            _session(str(i), app, DAY_START + i * 7 * MINUTE_MS, 5 * MINUTE_MS)
            for i, app in enumerate(["chrome", "slack", "code", "spotify", "mystery"])
        ]
        intervals = self._intervals(sessions)
        breakdown_total = sum(t.total_ms for t in category_totals(intervals, self.state))
        rail_total = sum(s.duration_ms for s in rail_segments(intervals, self.state))
        self.assertEqual(breakdown_total, rail_total)

    def test_empty_day(self) -> None:
        self.assertEqual(category_totals([], self.state), [])
        self.assertEqual(rail_segments([], self.state), [])


class AggregatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "activity.sqlite3"
        self.resolver = CategoryResolver(self.db_path)
        self.aggregator = Aggregator(self.db_path, self.resolver)
        with database_connection(self.db_path) as conn:
            insert_session(conn, _session("a", "chrome", DAY_START + HOUR_MS, HOUR_MS))
            insert_session(conn, _session("b", "blender", DAY_START + 2 * HOUR_MS, HOUR_MS))

    def tearDown(self) -> None:
        self.resolver.close()
        self._tmp.cleanup()

    def _breakdown(self) -> dict[str, int]:
        return {
            total.category_id: total.total_ms
            for total in self.aggregator.daily_breakdown(DAY_START)
        }

    def test_reassignment_applies_retroactively(self) -> None:
        self.assertEqual(self._breakdown(), {"browsers": HOUR_MS, MISCELLANEOUS: HOUR_MS})

        self.resolver.create_category("Art", "", "#AA3377")
        self.resolver.assign_app("blender", "art")
        self.assertEqual(self._breakdown(), {"browsers": HOUR_MS, "art": HOUR_MS})

        self.resolver.delete_category("art")
        self.assertEqual(self._breakdown(), {"browsers": HOUR_MS, MISCELLANEOUS: HOUR_MS})

    def test_queries_are_repeatable(self) -> None:
        self.assertEqual(
            self.aggregator.grouped_timeline(DAY_START),
            self.aggregator.grouped_timeline(DAY_START),
        )
        self.assertEqual(self.aggregator.daily_breakdown(DAY_START + DAY_MS), [])


if __name__ == "__main__":
    unittest.main()
