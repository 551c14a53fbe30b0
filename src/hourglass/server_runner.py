"""Helpers to launch the local HTTP API."""

from __future__ import annotations

import logging
import threading
import time
import webbrowser
from pathlib import Path
from typing import Optional

import uvicorn

from .config import CollectorSettings
from .paths import get_db_path
from .webapp import create_app

logger = logging.getLogger(__name__)


def run_server(
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    db_path: Optional[Path] = None,
    settings: Optional[CollectorSettings] = None,
    collect: bool = True,
    open_docs: bool = False,
    log_level: str = "info",
) -> None:
    """Serve the engine API with uvicorn, optionally running the collector."""
    app = create_app(
        db_path=db_path or get_db_path(),
        settings=settings or CollectorSettings(),
        start_collector=collect,
    )

    if open_docs:
        url = f"http://{host}:{port}/docs"
        threading.Thread(target=_open_after_delay, args=(url,), daemon=True).start()

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    logger.info("Serving Hourglass API on http://%s:%d (collector=%s)", host, port, collect)
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _open_after_delay(url: str) -> None:
    time.sleep(1.0)
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        logger.exception("Failed to launch browser for %s", url)
