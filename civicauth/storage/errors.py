from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the backing store cannot be reached or the query fails."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"storage operation failed: {operation}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StorageUnavailable"]
