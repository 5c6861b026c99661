"""
State storage and locking engine.

Versioned Terraform state documents persisted in MongoDB, advisory per-name
locks, paginated listings and single-resource lookup.
"""

from .engine import StateEngine
from .errors import (
    InputValidationError,
    LockNotFoundError,
    NotFoundError,
    StorageError,
    StoreError,
)
from .models import LockInfo, LockResult, LockStatus, StateDocument, StatePage

__all__ = [
    "StateEngine",
    "StateDocument",
    "StatePage",
    "LockInfo",
    "LockResult",
    "LockStatus",
    "StorageError",
    "StoreError",
    "NotFoundError",
    "InputValidationError",
    "LockNotFoundError",
]
