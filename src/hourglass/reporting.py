"""Console rendering of the daily breakdown and the timeline rail."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from .aggregation import local_day_start_ms
from .service import TrackerService


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, service: TrackerService) -> None:
        self.service = service

    def print_daily_summary(self, day: datetime, show_timeline: bool = False) -> None:
        day_start = local_day_start_ms(day)
        response = self.service.get_daily_category_breakdown(day_start)
        if not response["success"]:
            print(f"Unable to read activity: {response['error']}")
            return
        rows = response["data"]
        if not rows:
            print("No activity recorded for the selected day.")
            return

        total_ms = sum(row["time"] for row in rows)
        print(f"Summary for {day.strftime('%Y-%m-%d')}")
        print("-" * 40)
        print(f"Tracked time: {format_duration(total_ms / 1000)}")
        print()
        print("Categories:")
        for row in rows:
            share = row["time"] / total_ms * 100 if total_ms else 0.0
            print(
                f"  {row['category']:<20} {format_duration(row['time'] / 1000)}"
                f"  {share:5.1f}%"
            )

        if show_timeline:
            timeline = self.service.get_grouped_categories(day_start)
            if timeline["success"] and timeline["data"]:
                print()
                print("Timeline:")
                for line in format_timeline(timeline["data"]):
                    print(f"  {line}")


def format_timeline(segments: Iterable[dict[str, Any]]) -> list[str]:
    lines = []
    for segment in segments:
        end = datetime.fromtimestamp(segment["session_end"] / 1000)
        start = datetime.fromtimestamp(
            (segment["session_end"] - segment["session_length"]) / 1000
        )
        names = ", ".join(category["name"] for category in segment["categories"])
        lines.append(f"{start:%H:%M:%S}-{end:%H:%M:%S}  {names}")
    return lines


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
