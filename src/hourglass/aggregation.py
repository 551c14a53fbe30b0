"""Aggregated views over stored sessions: category breakdown and timeline rail."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, NamedTuple, Optional, Sequence

from .categories import CategoryResolver, CategoryState
from .db import fetch_sessions_between, reader_connection
from .models import CategoryTotal, RailSegment, Session

DAY_MS = 24 * 60 * 60 * 1000


class ClippedInterval(NamedTuple):
    start_ms: int
    end_ms: int
    category_id: str


def local_day_start_ms(value: Optional[datetime] = None) -> int:
    """Epoch milliseconds of local midnight for ``value`` (default: today)."""
    value = value or datetime.now()
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def day_end_ms(day_start_ms: int) -> int:
    return day_start_ms + DAY_MS


def clip_sessions(
    sessions: Iterable[Session],
    state: CategoryState,
    window_start_ms: int,
    window_end_ms: int,
) -> list[ClippedInterval]:
    """Clip sessions to the window and resolve their category at query time."""
    resolved: dict[str, str] = {}
    intervals: list[ClippedInterval] = []
    for session in sessions:
        start = max(session.started_at_ms, window_start_ms)
        end = min(session.ended_at_ms, window_end_ms)
        if end <= start:
            continue
        category_id = resolved.get(session.app_key)
        if category_id is None:
            category_id = resolved[session.app_key] = state.resolve(session.app_key)
        intervals.append(ClippedInterval(start, end, category_id))
    intervals.sort()
    return intervals


def category_totals(
    intervals: Iterable[ClippedInterval], state: CategoryState
) -> list[CategoryTotal]:
    totals: defaultdict[str, int] = defaultdict(int)
    for interval in intervals:
        totals[interval.category_id] += interval.end_ms - interval.start_ms
    ordered = sorted(
        ((category_id, total) for category_id, total in totals.items() if total > 0),
        key=lambda item: (-item[1], item[0]),
    )
    return [
        CategoryTotal(category_id=category_id, total_ms=total, color=state.color_for(category_id))
        for category_id, total in ordered
    ]


def rail_segments(
    intervals: Sequence[ClippedInterval], state: CategoryState
) -> list[RailSegment]:
    """Sweep the intervals and merge spans whose active category set is equal."""
    if not intervals:
        return []

    events: defaultdict[int, list[tuple[str, int]]] = defaultdict(list)
    for interval in intervals:
        events[interval.start_ms].append((interval.category_id, 1))
        events[interval.end_ms].append((interval.category_id, -1))

    active: defaultdict[str, int] = defaultdict(int)
    spans: list[tuple[int, int, frozenset[str]]] = []
    boundaries = sorted(events)
    for position, boundary in enumerate(boundaries):
        for category_id, delta in events[boundary]:
            active[category_id] += delta
            if active[category_id] == 0:
                del active[category_id]
        if position + 1 == len(boundaries) or not active:
            continue
        next_boundary = boundaries[position + 1]
        current = frozenset(active)
        if spans and spans[-1][1] == boundary and spans[-1][2] == current:
            spans[-1] = (spans[-1][0], next_boundary, current)
        else:
            spans.append((boundary, next_boundary, current))

    return [
        RailSegment(
            segment_end_ms=end,
            duration_ms=end - start,
            categories=tuple(
                (category_id, state.color_for(category_id)) for category_id in sorted(members)
            ),
        )
        for start, end, members in spans
    ]


class Aggregator:
    """Read-only query path over the session store and the category table."""

    def __init__(
        self,
        db_path: Path,
        resolver: CategoryResolver,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.db_path = Path(db_path)
        self._resolver = resolver
        self._timeout = timeout if timeout is not None else resolver.timeout

    def daily_breakdown(self, day_start_ms: int) -> list[CategoryTotal]:
        state, intervals = self._day_intervals(day_start_ms)
        return category_totals(intervals, state)

    def grouped_timeline(self, day_start_ms: int) -> list[RailSegment]:
        state, intervals = self._day_intervals(day_start_ms)
        return rail_segments(intervals, state)

    def _day_intervals(
        self, day_start_ms: int
    ) -> tuple[CategoryState, list[ClippedInterval]]:
        # One category snapshot per query: either fully before or fully after
        # any concurrent mutation.
        state = self._resolver.snapshot()
        end_ms = day_end_ms(day_start_ms)
        with reader_connection(self.db_path, timeout=self._timeout) as conn:
            sessions = fetch_sessions_between(conn, day_start_ms, end_ms)
        return state, clip_sessions(sessions, state, day_start_ms, end_ms)
