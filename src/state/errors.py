from __future__ import annotations


class StorageError(RuntimeError):
    """Base error for the state storage engine."""


class StoreError(StorageError):
    """The document store was unreachable, rejected a query or returned malformed data."""


class NotFoundError(StorageError):
    """No document matched the lookup. Expected outcome, not a failure."""


class InputValidationError(StorageError, ValueError):
    """Caller input rejected before touching the store."""


class LockNotFoundError(StoreError):
    """Unlock requested for a state that holds no lock."""


__all__ = [
    "StorageError",
    "StoreError",
    "NotFoundError",
    "InputValidationError",
    "LockNotFoundError",
]
