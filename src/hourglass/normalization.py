"""Utilities to normalize application identities, titles and category names."""

from __future__ import annotations

import re
from typing import Optional

_BROWSER_SUFFIXES: dict[str, tuple[str, ...]] = {
    "msedge": (" - Microsoft Edge",),
    "chrome": (" - Google Chrome",),
    "firefox": (" - Mozilla Firefox",),
    "brave": (" - Brave",),
    "opera": (" - Opera",),
}

_EXE_SUFFIX = ".exe"
_EXTRA_TAB_COUNT_PATTERN = re.compile(r"\s+and\s+\d+\s+more\s+pages?", re.IGNORECASE)
_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")
_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def normalize_app_key(process_name: Optional[str]) -> Optional[str]:
    """Lower-case an executable/app name and drop a trailing ``.exe``."""
    if process_name is None:
        return None
    lowered = process_name.strip().lower()
    if lowered.endswith(_EXE_SUFFIX):
        lowered = lowered[: -len(_EXE_SUFFIX)].rstrip()
    return lowered or None


def normalize_window_title(app_key: Optional[str], window_title: Optional[str]) -> Optional[str]:
    """Remove common browser suffixes to surface tab names."""
    if not window_title:
        return None
    normalized = window_title.strip()
    if not app_key:
        return normalized or None

    suffixes = _BROWSER_SUFFIXES.get(app_key)
    if suffixes:
        for suffix in suffixes:
            if normalized.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip(" -")
                break

    normalized = _strip_tab_count(normalized)
    normalized = re.sub(r"\s{2,}", " ", normalized).strip()
    return normalized or None


def category_id_from_name(name: str) -> str:
    """Derive a category slug: ``"My Focus!"`` becomes ``"my-focus"``.

    Returns an empty string when the name has no alphanumeric characters.
    """
    return _NON_ALNUM_RUN.sub("-", name.strip().lower()).strip("-")


def is_valid_color(value: str) -> bool:
    return bool(_HEX_COLOR.match(value.strip()))


def _strip_tab_count(value: str) -> str:
    cleaned = _EXTRA_TAB_COUNT_PATTERN.sub("", value)
    return cleaned.strip(" -|")
