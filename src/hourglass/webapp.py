"""FastAPI application that exposes the engine's contracts over local HTTP."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from .aggregation import local_day_start_ms
from .categories import CategoryResolver
from .collector import ActivityCollector
from .config import CollectorSettings
from .paths import get_db_path
from .sampler import WindowProbe
from .service import TrackerService

logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    "validation_error": 400,
    "not_deletable": 403,
    "unknown_category": 404,
    "duplicate_category": 409,
    "store_unavailable": 503,
}


class CollectorRunner:
    """Manage the activity collector in a background thread."""

    def __init__(
        self,
        db_path: Path,
        settings: CollectorSettings,
        resolver: CategoryResolver,
        probe: Optional[WindowProbe] = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._settings = settings
        self._resolver = resolver
        self._probe = probe
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._collector: Optional[ActivityCollector] = None

    @property
    def collector(self) -> Optional[ActivityCollector]:
        return self._collector

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            collector = ActivityCollector(
                db_path=self._db_path,
                settings=self._settings,
                resolver=self._resolver,
                probe=self._probe,
            )
            thread = threading.Thread(
                target=collector.run_until_stopped,
                args=(stop_event,),
                name="hourglass-collector",
                daemon=True,
            )
            self._collector = collector
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.info("Collector background thread started.")

    def stop(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._thread.is_alive() or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread:
            thread.join(timeout=10)
            logger.info("Collector background thread stopped.")

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())


class CategoryPayload(BaseModel):
    name: str
    description: str = ""
    color: str

    model_config = ConfigDict(extra="forbid")


class CategoryUpdatePayload(BaseModel):
    name: Optional[str] = None
    description: str = ""
    color: str

    model_config = ConfigDict(extra="forbid")


class AssignmentPayload(BaseModel):
    category_id: str

    model_config = ConfigDict(extra="forbid")


class MemberPayload(BaseModel):
    app_key: str

    model_config = ConfigDict(extra="forbid")


class SettingsImportPayload(BaseModel):
    document: str

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[CollectorSettings] = None,
    start_collector: bool = True,
    probe: Optional[WindowProbe] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_db_path = Path(db_path or get_db_path())
    resolved_settings = settings or CollectorSettings()
    resolver = CategoryResolver(
        resolved_db_path, timeout=resolved_settings.store_timeout.total_seconds()
    )
    runner = CollectorRunner(resolved_db_path, resolved_settings, resolver, probe)
    service = TrackerService(
        resolved_db_path,
        resolver=resolver,
        timeout=resolved_settings.store_timeout.total_seconds(),
    )

    app = FastAPI(title="Hourglass", version="0.3.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.collector_runner = runner
    app.state.service = service

    @app.on_event("startup")
    async def _startup() -> None:
        if start_collector:
            runner.start()
            service.collector = runner.collector

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        runner.stop()
        resolver.close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        tracking = _unwrap(request.app.state.service.get_tracking_status())
        return {
            "collector_running": request.app.state.collector_runner.is_running(),
            "database_path": str(request.app.state.db_path),
            "sample_seconds": resolved_settings.sample_interval.total_seconds(),
            "idle_minutes": resolved_settings.idle_threshold.total_seconds() / 60.0,
            "tracking": tracking["data"]["collector"],
        }

    @app.get("/api/breakdown")
    def breakdown(
        request: Request,
        date: Optional[str] = Query(
            default=None, description="Target date in YYYY-MM-DD format."
        ),
        day_start: Optional[int] = Query(
            default=None, description="Day start as epoch milliseconds."
        ),
    ) -> Dict[str, Any]:
        start_ms = _resolve_day_start(date, day_start)
        return _unwrap(request.app.state.service.get_daily_category_breakdown(start_ms))

    @app.get("/api/timeline")
    def timeline(
        request: Request,
        date: Optional[str] = Query(
            default=None, description="Target date in YYYY-MM-DD format."
        ),
        day_start: Optional[int] = Query(
            default=None, description="Day start as epoch milliseconds."
        ),
    ) -> Dict[str, Any]:
        start_ms = _resolve_day_start(date, day_start)
        return _unwrap(request.app.state.service.get_grouped_categories(start_ms))

    @app.get("/api/categories")
    def list_categories(request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.get_app_categories())

    @app.get("/api/categories/statistics")
    def category_statistics(request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.get_category_statistics())

    @app.post("/api/categories", status_code=201)
    def create_category(payload: CategoryPayload, request: Request) -> Dict[str, Any]:
        return _unwrap(
            request.app.state.service.create_custom_category(
                payload.name, payload.description, payload.color
            )
        )

    @app.put("/api/categories/{category_id}")
    def update_category(
        category_id: str, payload: CategoryUpdatePayload, request: Request
    ) -> Dict[str, Any]:
        return _unwrap(
            request.app.state.service.update_custom_category(
                category_id, payload.name, payload.description, payload.color
            )
        )

    @app.delete("/api/categories/{category_id}")
    def delete_category(category_id: str, request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.delete_custom_category(category_id))

    @app.post("/api/categories/{category_id}/members")
    def add_member(
        category_id: str, payload: MemberPayload, request: Request
    ) -> Dict[str, Any]:
        return _unwrap(
            request.app.state.service.add_app_to_custom_category(category_id, payload.app_key)
        )

    @app.put("/api/assignments/{app_key}")
    def assign_app(
        app_key: str, payload: AssignmentPayload, request: Request
    ) -> Dict[str, Any]:
        return _unwrap(
            request.app.state.service.assign_app_to_category(app_key, payload.category_id)
        )

    @app.delete("/api/assignments/{app_key}")
    def remove_assignment(app_key: str, request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.remove_app_category_assignment(app_key))

    @app.get("/api/category-settings")
    def category_settings(request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.get_user_category_settings())

    @app.get("/api/category-settings/export")
    def export_settings(request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.export_category_settings())

    @app.post("/api/category-settings/import")
    def import_settings(payload: SettingsImportPayload, request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.import_category_settings(payload.document))

    @app.post("/api/category-settings/reset")
    def reset_settings(request: Request) -> Dict[str, Any]:
        return _unwrap(request.app.state.service.reset_categories())

    return app


def _unwrap(response: Dict[str, Any]) -> Dict[str, Any]:
    if response.get("success"):
        return response
    status_code = _STATUS_BY_CODE.get(response.get("code", ""), 400)
    raise HTTPException(status_code=status_code, detail=response.get("error"))


def _resolve_day_start(date: Optional[str], day_start: Optional[int]) -> int:
    if day_start is not None:
        return day_start
    if not date:
        return local_day_start_ms()
    try:
        parsed = datetime.strptime(date, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc
    return local_day_start_ms(parsed)
