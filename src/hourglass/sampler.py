"""Foreground-window probing and the periodic sample stream."""

from __future__ import annotations

import ctypes
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Protocol

import psutil

from .errors import ProbeFailure
from .models import RawSample
from .normalization import normalize_app_key, normalize_window_title

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ForegroundWindow:
    window_id: Optional[int]
    process_name: Optional[str]
    title: Optional[str]


class WindowProbe(Protocol):
    def get_active_window(self) -> Optional[ForegroundWindow]:
        """Return the focused window, ``None`` when nothing has focus."""


class IdleDetector(Protocol):
    def is_idle(self, threshold_ms: int) -> bool:
        ...


class WindowsIdleDetector:
    """Detects idle state using Win32 APIs."""

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", ctypes.c_uint), ("dwTime", ctypes.c_ulong)]

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    def milliseconds_since_input(self) -> int:
        last_input = self.LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()
        return int(self._kernel32.GetTickCount() - last_input.dwTime) & 0xFFFFFFFF

    def is_idle(self, threshold_ms: int) -> bool:
        try:
            return self.milliseconds_since_input() >= threshold_ms
        except OSError:
            logger.exception("Failed to query idle state; assuming not idle.")
            return False


class WindowsActiveWindowProbe:
    """Retrieves the foreground window handle, title and process name."""

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]

    def get_active_window(self) -> Optional[ForegroundWindow]:
        hwnd = self._user32.GetForegroundWindow()
        if not hwnd:
            return None

        length = self._user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        self._user32.GetWindowTextW(hwnd, buffer, length + 1)
        window_title = buffer.value.strip() or None

        pid = ctypes.c_ulong()
        self._user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        process_name: Optional[str]
        try:
            process_name = psutil.Process(pid.value).name() if pid.value else None
        except (psutil.Error, ProcessLookupError):
            process_name = None

        return ForegroundWindow(
            window_id=int(hwnd), process_name=process_name, title=window_title
        )


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class WindowSampler:
    """Turns probe calls into ``RawSample`` values.

    A failing probe yields a sample carrying ``error`` instead of raising, so
    the stream never terminates on transient OS errors.
    """

    def __init__(
        self,
        probe: WindowProbe,
        interval_seconds: float = 1.0,
        *,
        clock: Callable[[], int] = _epoch_ms,
    ) -> None:
        self._probe = probe
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._consecutive_failures = 0

    def sample(self) -> RawSample:
        observed_at = self._clock()
        try:
            window = self._probe.get_active_window()
        except Exception as exc:
            failure = ProbeFailure(f"{type(exc).__name__}: {exc}")
            self._consecutive_failures += 1
            if self._consecutive_failures == 1:
                logger.warning("Foreground window probe failed: %s", failure)
            else:
                logger.debug("Probe still failing (%d): %s", self._consecutive_failures, failure)
            return RawSample(observed_at_ms=observed_at, error=str(failure))

        if self._consecutive_failures:
            logger.info("Probe recovered after %d failure(s).", self._consecutive_failures)
            self._consecutive_failures = 0

        if window is None:
            return RawSample(observed_at_ms=observed_at, error="no foreground window")

        app_key = normalize_app_key(window.process_name)
        return RawSample(
            observed_at_ms=observed_at,
            window_id=window.window_id,
            title=normalize_window_title(app_key, window.title) or window.title or "",
            app_key=app_key,
            error=None if app_key else "unidentified process",
        )

    def iter_samples(self, stop_event: Optional[threading.Event] = None) -> Iterator[RawSample]:
        """Yield one sample per interval until ``stop_event`` is set.

        Each call starts a fresh stream, so a consumer can restart sampling.
        """
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            yield self.sample()
            stop_event.wait(self.interval_seconds)
