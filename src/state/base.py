"""Storage backend protocol for state documents and locks."""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Protocol

from .models import LockInfo, StateDocument, StatePage


class Storage(Protocol):
    """Capabilities a state backend must provide.

    Implementations own the physical schema. Lock conflicts are not decided
    here; see `state.locks.LockCoordinator`.
    """

    def get_name(self) -> str:
        """Short backend identifier, e.g. "mongodb"."""
        ...

    def get_state(self, name: str, serial: int = 0, *, timeout: Optional[float] = None) -> StateDocument:
        """Return one version (serial 0 = latest). Raises NotFoundError."""
        ...

    def insert_state(
        self,
        doc: StateDocument,
        timestamp: str,
        source: str,
        name: str,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Upsert the version keyed by (name, doc.serial)."""
        ...

    def remove_state(self, name: str, *, timeout: Optional[float] = None) -> int:
        """Delete every version of `name`; returns the number removed."""
        ...

    def list_states(self, page: int, page_size: int, *, timeout: Optional[float] = None) -> StatePage:
        """Latest version per distinct name, paginated."""
        ...

    def list_state_serials(
        self, name: str, page: int, page_size: int, *, timeout: Optional[float] = None
    ) -> StatePage:
        """Every version of `name` by ascending serial, paginated."""
        ...

    def get_lock(self, name: str, *, timeout: Optional[float] = None) -> Optional[LockInfo]:
        """Current lock for `name`, or None when unlocked."""
        ...

    def get_locks(self, names: Iterable[str], *, timeout: Optional[float] = None) -> Dict[str, LockInfo]:
        """Current locks for several names in one round trip."""
        ...

    def insert_lock_if_absent(
        self, name: str, info: LockInfo, *, timeout: Optional[float] = None
    ) -> Optional[LockInfo]:
        """Atomically store `info` unless a lock exists; returns the existing lock or None."""
        ...

    def delete_lock(
        self, name: str, lock_id: Optional[str] = None, *, timeout: Optional[float] = None
    ) -> bool:
        """Delete the lock (only if it carries `lock_id`, when given); True if deleted."""
        ...
