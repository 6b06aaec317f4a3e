from __future__ import annotations

from typing import Any, Dict, Optional


class StoreFailure(Exception):
    """Storage-layer failure carrying a message and structured ``detail``."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreFailure):
    """A uniqueness or foreign-key rule rejected the write."""


class StorageError(StoreFailure):
    """The backing store could not be read or written."""


__all__ = ["StoreFailure", "ConstraintViolation", "StorageError"]
