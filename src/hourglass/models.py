"""Domain models for sampled activity, sessions and categories."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(slots=True, frozen=True)
class RawSample:
    """A single observation of the foreground window.

    Samples whose probe call failed carry ``error`` and no identity; the
    session builder treats them as a gap in the data.
    """

    observed_at_ms: int
    window_id: Optional[int] = None
    title: Optional[str] = None
    app_key: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        return self.error is None and bool(self.app_key)


@dataclass(slots=True, frozen=True)
class Session:
    """Represents a contiguous block of time spent in a single application."""

    id: str
    title: str
    app_key: str
    started_at_ms: int
    duration_ms: int
    category_id: Optional[str] = None

    @property
    def ended_at_ms(self) -> int:
        return self.started_at_ms + self.duration_ms

    @property
    def started_at(self) -> datetime:
        return datetime.fromtimestamp(self.started_at_ms / 1000)


@dataclass(slots=True, frozen=True)
class Category:
    id: str
    name: str
    description: str
    color: str
    member_apps: frozenset[str] = field(default_factory=frozenset)
    is_custom: bool = False


@dataclass(slots=True, frozen=True)
class CategoryTotal:
    category_id: str
    total_ms: int
    color: str


@dataclass(slots=True, frozen=True)
class RailSegment:
    segment_end_ms: int
    duration_ms: int
    categories: tuple[tuple[str, str], ...]

    @property
    def segment_start_ms(self) -> int:
        return self.segment_end_ms - self.duration_ms
