"""Error taxonomy shared by the engine and its request/response boundary."""

from __future__ import annotations


class HourglassError(Exception):
    """Base class for every error raised by the engine."""

    code = "error"


class ProbeFailure(HourglassError):
    """The OS probe could not report the foreground window."""

    code = "probe_failure"


class StoreUnavailable(HourglassError):
    """Reading from or writing to the SQLite store failed."""

    code = "store_unavailable"


class CategoryError(HourglassError):
    code = "category_error"


class DuplicateCategory(CategoryError):
    code = "duplicate_category"

    def __init__(self, category_id: str) -> None:
        super().__init__(f"Category '{category_id}' already exists")
        self.category_id = category_id


class UnknownCategory(CategoryError):
    code = "unknown_category"

    def __init__(self, category_id: str) -> None:
        super().__init__(f"Category '{category_id}' does not exist")
        self.category_id = category_id


class NotDeletable(CategoryError):
    """Raised for attempts to delete or edit a built-in category."""

    code = "not_deletable"

    def __init__(self, category_id: str) -> None:
        super().__init__(f"Category '{category_id}' is built in and cannot be changed")
        self.category_id = category_id


class ValidationError(CategoryError):
    code = "validation_error"
