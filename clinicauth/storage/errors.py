from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the backing store fails to carry out an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StoreError):
    """The store could not be reached within the configured time bound."""


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


__all__ = ["StoreError", "StoreUnavailable", "ConstraintViolation"]
