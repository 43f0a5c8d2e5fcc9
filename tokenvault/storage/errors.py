from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateKeyError(ConstraintViolation):
    """Raised by ``insert`` when the document's primary key already exists."""


class StoreUnavailableError(Exception):
    """The backing store could not be reached or failed mid-operation."""

    def __init__(self, message: str, *, backend: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.backend = backend


__all__ = ["ConstraintViolation", "DuplicateKeyError", "StoreUnavailableError"]
