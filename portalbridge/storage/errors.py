from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a backing store cannot complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CorruptRecordError(StorageError):
    """A persisted record could not be decoded into its model."""


__all__ = ["StorageError", "CorruptRecordError"]
