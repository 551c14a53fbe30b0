"""Category definitions and the resolver that maps apps onto them."""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .db import (
    DEFAULT_TIMEOUT_SECONDS,
    data_version,
    load_custom_categories,
    load_overrides,
    open_database,
    replace_category_state,
    transaction,
)
from .errors import (
    DuplicateCategory,
    NotDeletable,
    StoreUnavailable,
    UnknownCategory,
    ValidationError,
)
from .models import Category
from .normalization import category_id_from_name, is_valid_color, normalize_app_key

logger = logging.getLogger(__name__)

MISCELLANEOUS = "miscellaneous"
MISCELLANEOUS_COLOR = "#808080"


def _builtin(
    category_id: str, description: str, color: str, apps: Iterable[str]
) -> Category:
    return Category(
        id=category_id,
        name=category_id.capitalize(),
        description=description,
        color=color,
        member_apps=frozenset(
            key for key in (normalize_app_key(app) for app in apps) if key
        ),
        is_custom=False,
    )


_BUILTIN_LIST = (
    _builtin(
        "development",
        "Development tools, IDEs, and programming-related applications",
        "#A554E8",
        (
            "Visual Studio Code",
            "Code.exe",
            "Electron",
            "OpenJDK Platform binary",
            "Java(TM) Platform SE binary",
            "SQLiteStudio.exe",
            "pgAdmin 4",
            "pycharm64.exe",
            "WindowsTerminal.exe",
        ),
    ),
    _builtin(
        "social",
        "Social media, communication, and messaging applications",
        "#FF9CF5",
        ("Discord", "WhatsApp.exe", "Slack", "Teams", "ms-teams.exe", "Telegram"),
    ),
    _builtin(
        "entertainment",
        "Games, media players, and entertainment applications",
        "#7DD4FF",
        (
            "Teardown",
            "Minecraft.exe",
            "Plex.exe",
            "Spotify",
            "Windows Media Player",
            "Xbox App",
            "Hydra",
            "vlc.exe",
        ),
    ),
    _builtin(
        "productivity",
        "Time tracking, office applications, and productivity tools",
        "#877DFF",
        (
            "Hourglass",
            "Microsoft OneDrive",
            "Google Drive",
            "Notepad.exe",
            "ShareX",
            "Task Manager",
            "WINWORD.EXE",
            "EXCEL.EXE",
            "OUTLOOK.EXE",
        ),
    ),
    _builtin(
        "browsers",
        "Web browsers and browser-related applications",
        "#D178F0",
        (
            "Google Chrome",
            "chrome.exe",
            "Zen",
            "firefox.exe",
            "msedge.exe",
            "brave.exe",
            "opera.exe",
        ),
    ),
    _builtin(
        "system",
        "System utilities, Windows components, and OS-level applications",
        "#9BA8FF",
        (
            "Windows Explorer",
            "explorer.exe",
            "Windows Shell Experience Host",
            "Windows Start Experience Host",
            "Application Frame Host",
            "SearchHost.exe",
            "Microsoft.CmdPal.UI",
            "Pick an app",
            "gamingservicesui.exe",
        ),
    ),
    _builtin(
        "utilities",
        "System utilities, tools, and hardware-related applications",
        "#B494E8",
        (
            "NVIDIA App",
            "VB-AUDIO Virtual Audio Device Mixing Console Application",
            "Remote Desktop Connection",
        ),
    ),
    _builtin(
        MISCELLANEOUS,
        "Applications that do not belong to any other category",
        MISCELLANEOUS_COLOR,
        (),
    ),
)

BUILTIN_CATEGORIES: Mapping[str, Category] = MappingProxyType(
    {category.id: category for category in _BUILTIN_LIST}
)


@dataclass(frozen=True)
class CategoryState:
    """Immutable view of custom categories and overrides.

    Resolution is a pure function of this value, so readers holding a state
    reference are unaffected by concurrent mutations.
    """

    custom: Mapping[str, Category]
    overrides: Mapping[str, str]

    @classmethod
    def build(
        cls, custom: Mapping[str, Category], overrides: Mapping[str, str]
    ) -> "CategoryState":
        return cls(
            custom=MappingProxyType(dict(custom)),
            overrides=MappingProxyType(dict(overrides)),
        )

    def resolve(self, app_key: str) -> str:
        """Override, then custom membership, then built-in membership, then fallback."""
        override = self.overrides.get(app_key)
        if override is not None and self.exists(override):
            return override
        for category_id in sorted(self.custom):
            if app_key in self.custom[category_id].member_apps:
                return category_id
        for category in BUILTIN_CATEGORIES.values():
            if app_key in category.member_apps:
                return category.id
        return MISCELLANEOUS

    def exists(self, category_id: str) -> bool:
        return category_id in BUILTIN_CATEGORIES or category_id in self.custom

    def get(self, category_id: str) -> Optional[Category]:
        return self.custom.get(category_id) or BUILTIN_CATEGORIES.get(category_id)

    def color_for(self, category_id: str) -> str:
        category = self.get(category_id)
        return category.color if category else MISCELLANEOUS_COLOR

    def all_categories(self) -> list[Category]:
        return [*BUILTIN_CATEGORIES.values(), *(self.custom[key] for key in sorted(self.custom))]

    def group_apps(self, detected_apps: Iterable[str]) -> Dict[str, list[str]]:
        """Bucket detected apps by category.

        Custom categories and ``miscellaneous`` are always listed; other
        built-ins only when at least one detected app resolves to them.
        """
        grouped: Dict[str, list[str]] = {}
        for category in self.all_categories():
            grouped[category.id] = []
        for app_key in sorted(set(detected_apps)):
            grouped.setdefault(self.resolve(app_key), []).append(app_key)
        return {
            category_id: apps
            for category_id, apps in grouped.items()
            if apps or category_id == MISCELLANEOUS or category_id in self.custom
        }


class CustomCategoryDocument(BaseModel):
    name: Optional[str] = None
    description: str = ""
    color: str
    apps: list[str] = Field(default_factory=list)
    isCustom: bool = True

    model_config = ConfigDict(extra="ignore")


class CategorySettingsDocument(BaseModel):
    """Portable export format for custom categories and overrides."""

    customCategories: Dict[str, CustomCategoryDocument]
    appCategoryOverrides: Dict[str, str]
    exportDate: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


def _load_state(conn: sqlite3.Connection) -> CategoryState:
    return CategoryState.build(load_custom_categories(conn), load_overrides(conn))


class CategoryResolver:
    """Owns the category table and answers ``app_key -> category_id`` lookups.

    Several resolvers may share one database (the web server and each CLI
    call). Every mutation re-reads the stored state inside the same write
    transaction that rewrites it, and :meth:`snapshot` reloads whenever
    another connection has committed since the last read.
    """

    def __init__(
        self, db_path: Path, *, timeout: float = DEFAULT_TIMEOUT_SECONDS
    ) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._lock = threading.Lock()
        try:
            self._conn = open_database(
                self.db_path, check_same_thread=False, timeout=timeout
            )
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Unable to load categories: {exc}") from exc
        self._version: Optional[int] = None
        # Seeds the built-in rows on first use.
        self._state = self._mutate(lambda state: state)
        logger.debug(
            "Loaded %d custom categories and %d overrides",
            len(self._state.custom),
            len(self._state.overrides),
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def snapshot(self) -> CategoryState:
        with self._lock:
            try:
                version = data_version(self._conn)
                if version != self._version:
                    with transaction(self._conn, begin="BEGIN"):
                        self._state = _load_state(self._conn)
                    self._version = version
                    logger.debug("Category settings changed on disk; reloaded.")
            except sqlite3.Error as exc:
                logger.warning("Could not refresh categories, using cached copy: %s", exc)
            return self._state

    def resolve(self, app_key: str) -> str:
        return self.snapshot().resolve(app_key)

    def create_category(self, name: str, description: str, color: str) -> str:
        category_id = self._validated_id(name)
        color = self._validated_color(color)

        def change(state: CategoryState) -> CategoryState:
            if state.exists(category_id):
                raise DuplicateCategory(category_id)
            custom = dict(state.custom)
            custom[category_id] = Category(
                id=category_id,
                name=name.strip(),
                description=(description or "").strip(),
                color=color,
                member_apps=frozenset(),
                is_custom=True,
            )
            return CategoryState.build(custom, state.overrides)

        self._mutate(change)
        logger.info("Created custom category %s", category_id)
        return category_id

    def update_category(
        self,
        category_id: str,
        name: Optional[str],
        description: str,
        color: str,
    ) -> None:
        color = self._validated_color(color)

        def change(state: CategoryState) -> CategoryState:
            existing = self._require_custom(state, category_id)
            if name and category_id_from_name(name) != category_id:
                raise ValidationError("Categories cannot be renamed")
            custom = dict(state.custom)
            custom[category_id] = replace(
                existing, description=(description or "").strip(), color=color
            )
            return CategoryState.build(custom, state.overrides)

        self._mutate(change)
        logger.info("Updated custom category %s", category_id)

    def delete_category(self, category_id: str) -> None:
        affected: set[str] = set()

        def change(state: CategoryState) -> CategoryState:
            existing = self._require_custom(state, category_id)
            candidates = set(existing.member_apps) | {
                app_key
                for app_key, target in state.overrides.items()
                if target == category_id
            }
            affected.update(app for app in candidates if state.resolve(app) == category_id)

            custom = {key: value for key, value in state.custom.items() if key != category_id}
            overrides = {
                app_key: target
                for app_key, target in state.overrides.items()
                if target != category_id
            }
            remaining = CategoryState.build(custom, overrides)
            for app_key in affected:
                # Another membership would capture the app; pin it instead.
                if remaining.resolve(app_key) != MISCELLANEOUS:
                    overrides[app_key] = MISCELLANEOUS
            return CategoryState.build(custom, overrides)

        self._mutate(change)
        logger.info(
            "Deleted custom category %s; %d app(s) moved to %s",
            category_id,
            len(affected),
            MISCELLANEOUS,
        )

    def assign_app(self, app_key: str, category_id: str) -> None:
        key = self._validated_app_key(app_key)

        def change(state: CategoryState) -> CategoryState:
            if not state.exists(category_id):
                raise UnknownCategory(category_id)
            overrides = dict(state.overrides)
            overrides[key] = category_id
            return CategoryState.build(state.custom, overrides)

        self._mutate(change)
        logger.info("Assigned %s to %s", key, category_id)

    def remove_assignment(self, app_key: str) -> bool:
        key = self._validated_app_key(app_key)
        removed = False

        def change(state: CategoryState) -> Optional[CategoryState]:
            nonlocal removed
            if key not in state.overrides:
                return None
            removed = True
            overrides = {k: v for k, v in state.overrides.items() if k != key}
            return CategoryState.build(state.custom, overrides)

        self._mutate(change)
        if removed:
            logger.info("Removed category override for %s", key)
        return removed

    def add_member(self, category_id: str, app_key: str) -> None:
        """Add an app to a custom category's membership list."""
        key = self._validated_app_key(app_key)

        def change(state: CategoryState) -> CategoryState:
            target = self._require_custom(state, category_id)
            custom = {
                cid: (
                    replace(category, member_apps=category.member_apps - {key})
                    if key in category.member_apps
                    else category
                )
                for cid, category in state.custom.items()
            }
            custom[category_id] = replace(target, member_apps=target.member_apps | {key})
            return CategoryState.build(custom, state.overrides)

        self._mutate(change)

    def reset_to_defaults(self) -> None:
        self._mutate(lambda state: CategoryState.build({}, {}))
        logger.info("Category settings reset to defaults")

    def export_settings(self) -> str:
        state = self.snapshot()
        document = CategorySettingsDocument(
            customCategories={
                category.id: CustomCategoryDocument(
                    name=category.name,
                    description=category.description,
                    color=category.color,
                    apps=sorted(category.member_apps),
                )
                for category in state.custom.values()
            },
            appCategoryOverrides=dict(state.overrides),
            exportDate=datetime.now().astimezone().isoformat(),
        )
        return document.model_dump_json(indent=2)

    def import_settings(self, payload: str) -> None:
        try:
            document = CategorySettingsDocument.model_validate_json(payload)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid settings document: {exc}") from exc

        custom: dict[str, Category] = {}
        for category_id, entry in document.customCategories.items():
            if category_id in BUILTIN_CATEGORIES:
                raise DuplicateCategory(category_id)
            if category_id_from_name(category_id) != category_id:
                raise ValidationError(f"Invalid category id '{category_id}'")
            custom[category_id] = Category(
                id=category_id,
                name=(entry.name or category_id).strip(),
                description=entry.description.strip(),
                color=self._validated_color(entry.color),
                member_apps=frozenset(
                    key for key in (normalize_app_key(app) for app in entry.apps) if key
                ),
                is_custom=True,
            )
        overrides: dict[str, str] = {}
        for app_key, category_id in document.appCategoryOverrides.items():
            if category_id not in BUILTIN_CATEGORIES and category_id not in custom:
                raise UnknownCategory(category_id)
            overrides[self._validated_app_key(app_key)] = category_id

        self._mutate(lambda state: CategoryState.build(custom, overrides))
        logger.info(
            "Imported %d custom categories and %d overrides", len(custom), len(overrides)
        )

    def statistics(self, detected_apps: Iterable[str]) -> Dict[str, Any]:
        state = self.snapshot()
        apps = sorted(set(detected_apps))
        miscellaneous = sum(1 for app in apps if state.resolve(app) == MISCELLANEOUS)
        return {
            "customCategories": len(state.custom),
            "appOverrides": len(state.overrides),
            "totalDetectedApps": len(apps),
            "categorizedApps": len(apps) - miscellaneous,
            "miscellaneousApps": miscellaneous,
        }

    def _mutate(
        self, change: Callable[[CategoryState], Optional[CategoryState]]
    ) -> CategoryState:
        """Apply ``change`` to the stored state and publish the result.

        The read and the rewrite share one ``BEGIN IMMEDIATE`` transaction, so
        commits from other resolvers are never overwritten. ``change`` returns
        ``None`` when nothing needs writing; exceptions roll back.
        """
        with self._lock:
            try:
                with transaction(self._conn):
                    current = _load_state(self._conn)
                    updated = change(current)
                    if updated is not None:
                        replace_category_state(
                            self._conn, updated.all_categories(), updated.overrides
                        )
                self._version = data_version(self._conn)
            except sqlite3.Error as exc:
                logger.error("Failed to persist category settings: %s", exc)
                raise StoreUnavailable(f"Unable to save categories: {exc}") from exc
            self._state = updated if updated is not None else current
            return self._state

    @staticmethod
    def _require_custom(state: CategoryState, category_id: str) -> Category:
        if category_id in BUILTIN_CATEGORIES:
            raise NotDeletable(category_id)
        existing = state.custom.get(category_id)
        if existing is None:
            raise UnknownCategory(category_id)
        return existing

    @staticmethod
    def _validated_id(name: str) -> str:
        if not name or not name.strip():
            raise ValidationError("Category name is required")
        category_id = category_id_from_name(name)
        if not category_id:
            raise ValidationError("Category name must contain letters or digits")
        return category_id

    @staticmethod
    def _validated_color(color: str) -> str:
        if not color or not is_valid_color(color):
            raise ValidationError(f"Invalid color '{color}'; expected #RRGGBB")
        return color.strip()

    @staticmethod
    def _validated_app_key(app_key: str) -> str:
        key = normalize_app_key(app_key)
        if not key:
            raise ValidationError("App name is required")
        return key
