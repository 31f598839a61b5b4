from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by the persistence layer."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class DuplicateToken(ConstraintViolation):
    """A refresh token value collided with an existing row."""


class DuplicateAccount(ConstraintViolation):
    """An account with the same email already exists."""


class StorageUnavailable(StorageError):
    """Transient backend failure; the operation may succeed on retry."""


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "DuplicateToken",
    "DuplicateAccount",
    "StorageUnavailable",
]
