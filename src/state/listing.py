from __future__ import annotations

from typing import Optional

from .base import Storage
from .errors import InputValidationError
from .locks import LockCoordinator
from .models import StatePage


def validate_pagination(page: int, page_size: int) -> None:
    """Reject non-positive pages rather than clamping them."""
    if isinstance(page, bool) or not isinstance(page, int) or page <= 0:
        raise InputValidationError(f"page must be a positive integer, got {page!r}")
    if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
        raise InputValidationError(f"page size must be a positive integer, got {page_size!r}")


class Lister:
    """Paged views of the state catalogue, each item joined with its lock status."""

    def __init__(self, storage: Storage, locks: LockCoordinator) -> None:
        self._storage = storage
        self._locks = locks

    def list_states(self, page: int, page_size: int, *, timeout: Optional[float] = None) -> StatePage:
        validate_pagination(page, page_size)
        result = self._storage.list_states(page, page_size, timeout=timeout)
        return self._with_locks(result, timeout)

    def list_state_serials(
        self, name: str, page: int, page_size: int, *, timeout: Optional[float] = None
    ) -> StatePage:
        validate_pagination(page, page_size)
        result = self._storage.list_state_serials(name, page, page_size, timeout=timeout)
        return self._with_locks(result, timeout)

    def _with_locks(self, result: StatePage, timeout: Optional[float]) -> StatePage:
        if not result.data:
            return result
        held = self._locks.lock_statuses({item.name for item in result.data}, timeout=timeout)
        data = [
            item.model_copy(
                deep=True,
                update={
                    "locked": item.name in held,
                    "lock": held[item.name].model_copy() if item.name in held else None,
                },
            )
            for item in result.data
        ]
        return StatePage(metadata=result.metadata.model_copy(), data=data)


__all__ = ["Lister", "validate_pagination"]
