from __future__ import annotations

from typing import Optional

from .base import Storage
from .errors import InputValidationError
from .listing import Lister
from .locks import LockCoordinator
from .models import (
    DEFAULT_SOURCE,
    MAX_SERIAL,
    LockInfo,
    LockResult,
    ResourceState,
    StateDocument,
    StatePage,
    format_timestamp,
    parse_timestamp,
)
from .resources import ResourceResolver


class StateEngine:
    """
    Operations exposed to the transport layer, one per capability.

    Holds no mutable state of its own: everything durable lives behind the
    injected `Storage`. Every method accepts an optional per-call `timeout`
    (seconds) that is passed down to the store.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self.locks = LockCoordinator(storage)
        self.lister = Lister(storage, self.locks)
        self.resolver = ResourceResolver(storage)

    def list_states(self, page: int, page_size: int, *, timeout: Optional[float] = None) -> StatePage:
        return self.lister.list_states(page, page_size, timeout=timeout)

    def get_state(self, name: str, serial: int = 0, *, timeout: Optional[float] = None) -> StateDocument:
        if serial < 0 or serial > MAX_SERIAL:
            raise InputValidationError(f"serial must be between 0 and {MAX_SERIAL}, got {serial}")
        return self.storage.get_state(name, serial, timeout=timeout)

    def insert_state(
        self,
        name: str,
        doc: StateDocument,
        *,
        timestamp: Optional[str] = None,
        source: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if not -MAX_SERIAL - 1 <= doc.serial <= MAX_SERIAL:
            raise InputValidationError(f"serial {doc.serial} does not fit in 64 bits")
        if timestamp:
            try:
                parse_timestamp(timestamp)
            except ValueError as ex:
                raise InputValidationError(f"timestamp must use YYYYMMDDhhmmss, got {timestamp!r}") from ex
        else:
            timestamp = format_timestamp()
        self.storage.insert_state(doc, timestamp, source or DEFAULT_SOURCE, name, timeout=timeout)

    def remove_state(self, name: str, *, timeout: Optional[float] = None) -> int:
        return self.storage.remove_state(name, timeout=timeout)

    def list_state_serials(
        self, name: str, page: int, page_size: int, *, timeout: Optional[float] = None
    ) -> StatePage:
        return self.lister.list_state_serials(name, page, page_size, timeout=timeout)

    def get_resource(
        self,
        state: str,
        module: str,
        name: str,
        *,
        timeout: Optional[float] = None,
    ) -> ResourceState:
        return self.resolver.get_resource(state, module, name, timeout=timeout)

    def get_lock_status(self, name: str, *, timeout: Optional[float] = None) -> LockInfo:
        return self.locks.get_lock_status(name, timeout=timeout)

    def lock_state(self, name: str, info: LockInfo, *, timeout: Optional[float] = None) -> LockResult:
        return self.locks.lock_state(name, info, timeout=timeout)

    def unlock_state(
        self,
        name: str,
        info: LockInfo,
        *,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> LockResult:
        return self.locks.unlock_state(name, info, force=force, timeout=timeout)


__all__ = ["StateEngine"]
