"""Request/response contracts consumed by the presentation layer.

Every public method returns a plain ``dict`` with a ``success`` flag; engine
errors are converted into ``{"success": False, "error": ..., "code": ...}``
and never escape this boundary.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from .aggregation import Aggregator, local_day_start_ms
from .categories import CategoryResolver
from .collector import ActivityCollector
from .db import DEFAULT_TIMEOUT_SECONDS, fetch_detected_apps, reader_connection
from .errors import HourglassError, StoreUnavailable

logger = logging.getLogger(__name__)

Response = Dict[str, Any]
F = TypeVar("F", bound=Callable[..., Response])


def _failure(exc: HourglassError) -> Response:
    return {"success": False, "error": str(exc), "code": exc.code}


def _guarded(func: F) -> F:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Response:
        try:
            return func(*args, **kwargs)
        except HourglassError as exc:
            logger.info("%s failed: %s", func.__name__, exc)
            return _failure(exc)
        except sqlite3.Error as exc:
            logger.error("%s failed with a store error: %s", func.__name__, exc)
            return _failure(StoreUnavailable(str(exc)))

    return wrapper  # type: ignore[return-value]


class TrackerService:
    """Facade over the resolver, the aggregator and (optionally) the collector."""

    def __init__(
        self,
        db_path: Path,
        *,
        resolver: Optional[CategoryResolver] = None,
        collector: Optional[ActivityCollector] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.resolver = resolver or CategoryResolver(self.db_path, timeout=timeout)
        self.aggregator = Aggregator(self.db_path, self.resolver, timeout=timeout)
        self.collector = collector

    @_guarded
    def get_daily_category_breakdown(self, day_start_ms: Optional[int] = None) -> Response:
        day_start = day_start_ms if day_start_ms is not None else local_day_start_ms()
        totals = self.aggregator.daily_breakdown(int(day_start))
        return {
            "success": True,
            "data": [
                {"category": total.category_id, "time": total.total_ms, "color": total.color}
                for total in totals
            ],
        }

    @_guarded
    def get_grouped_categories(self, day_start_ms: int) -> Response:
        segments = self.aggregator.grouped_timeline(int(day_start_ms))
        return {
            "success": True,
            "data": [
                {
                    "session_length": segment.duration_ms,
                    "session_end": segment.segment_end_ms,
                    "categories": [
                        {"name": category_id, "color": color}
                        for category_id, color in segment.categories
                    ],
                }
                for segment in segments
            ],
        }

    @_guarded
    def get_app_categories(self) -> Response:
        detected = self._detected_apps()
        state = self.resolver.snapshot()
        categories: Dict[str, Any] = {}
        for category_id, apps in state.group_apps(detected).items():
            category = state.get(category_id)
            if category is None:
                continue
            entry: Dict[str, Any] = {
                "description": category.description,
                "color": category.color,
                "apps": apps,
            }
            if category.is_custom:
                entry["isCustom"] = True
            categories[category_id] = entry
        return {
            "success": True,
            "data": {"detectedApps": detected, "categories": categories},
        }

    @_guarded
    def get_user_category_settings(self) -> Response:
        state = self.resolver.snapshot()
        return {
            "success": True,
            "data": {
                "customCategories": {
                    category.id: {
                        "name": category.name,
                        "description": category.description,
                        "color": category.color,
                        "apps": sorted(category.member_apps),
                        "isCustom": True,
                    }
                    for category in state.custom.values()
                },
                "appCategoryOverrides": dict(state.overrides),
            },
        }

    @_guarded
    def create_custom_category(self, name: str, description: str, color: str) -> Response:
        category_id = self.resolver.create_category(name, description, color)
        return {"success": True, "id": category_id}

    @_guarded
    def update_custom_category(
        self, category_id: str, name: Optional[str], description: str, color: str
    ) -> Response:
        self.resolver.update_category(category_id, name, description, color)
        return {"success": True}

    @_guarded
    def delete_custom_category(self, category_id: str) -> Response:
        self.resolver.delete_category(category_id)
        return {"success": True}

    @_guarded
    def assign_app_to_category(self, app_key: str, category_id: str) -> Response:
        self.resolver.assign_app(app_key, category_id)
        return {"success": True}

    @_guarded
    def remove_app_category_assignment(self, app_key: str) -> Response:
        removed = self.resolver.remove_assignment(app_key)
        return {"success": True, "removed": removed}

    @_guarded
    def add_app_to_custom_category(self, category_id: str, app_key: str) -> Response:
        self.resolver.add_member(category_id, app_key)
        return {"success": True}

    @_guarded
    def reset_categories(self) -> Response:
        self.resolver.reset_to_defaults()
        return {"success": True}

    @_guarded
    def export_category_settings(self) -> Response:
        return {"success": True, "data": self.resolver.export_settings()}

    @_guarded
    def import_category_settings(self, payload: str) -> Response:
        self.resolver.import_settings(payload)
        return {"success": True}

    @_guarded
    def get_category_statistics(self) -> Response:
        return {"success": True, "data": self.resolver.statistics(self._detected_apps())}

    @_guarded
    def get_tracking_status(self) -> Response:
        if self.collector is None:
            return {"success": True, "data": {"collector": None}}
        status = self.collector.status()
        response: Response = {"success": True, "data": {"collector": status}}
        if status["store"]["degraded"]:
            response["warning"] = StoreUnavailable.code
        return response

    def _detected_apps(self) -> list[str]:
        with reader_connection(self.db_path, timeout=self.timeout) as conn:
            return fetch_detected_apps(conn)
