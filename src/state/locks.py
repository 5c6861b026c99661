from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from .base import Storage
from .errors import LockNotFoundError, NotFoundError
from .models import LockInfo, LockResult, LockStatus


log = logging.getLogger(__name__)


class LockCoordinator:
    """
    Advisory, single-holder locks keyed by state name.

    There is no expiry, heartbeat or fencing beyond the caller-chosen lock id.
    Requests never wait: a held lock is reported back immediately.

    State machine per name
    - unlocked + lock(A)        -> locked(A), ACQUIRED
    - locked(A) + lock(A)       -> unchanged, ALREADY_HELD (retry of the same session)
    - locked(A) + lock(B)       -> unchanged, CONFLICT carrying A
    - locked(A) + unlock(A)     -> unlocked, RELEASED
    - locked(A) + unlock(B)     -> unchanged, CONFLICT carrying A (unless forced)
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def lock_state(self, name: str, info: LockInfo, *, timeout: Optional[float] = None) -> LockResult:
        claim = info.model_copy(update={"path": name})
        existing = self._storage.insert_lock_if_absent(name, claim, timeout=timeout)
        if existing is None:
            log.info("lock acquired on %s by %s (id=%s)", name, claim.who, claim.id)
            return LockResult(status=LockStatus.ACQUIRED, lock=claim)

        if existing.id == claim.id:
            log.info("lock on %s already held by the requester (id=%s)", name, claim.id)
            return LockResult(status=LockStatus.ALREADY_HELD, lock=existing)

        log.warning(
            "lock on %s refused for id=%s: held by %s (id=%s)", name, claim.id, existing.who, existing.id
        )
        return LockResult(status=LockStatus.CONFLICT, lock=existing)

    def get_lock_status(self, name: str, *, timeout: Optional[float] = None) -> LockInfo:
        """Return the current lock; raises NotFoundError when `name` is unlocked."""
        lock = self.current_lock(name, timeout=timeout)
        if lock is None:
            raise NotFoundError(f"state {name!r} is not locked")
        return lock

    def current_lock(self, name: str, *, timeout: Optional[float] = None) -> Optional[LockInfo]:
        return self._storage.get_lock(name, timeout=timeout)

    def lock_statuses(self, names: Iterable[str], *, timeout: Optional[float] = None) -> Dict[str, LockInfo]:
        return self._storage.get_locks(names, timeout=timeout)

    def unlock_state(
        self,
        name: str,
        info: LockInfo,
        *,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> LockResult:
        """
        Release the lock on `name`.

        The stored lock id must match `info.id` unless `force` is set.
        Raises LockNotFoundError when there is nothing to release.
        """
        lock_id = None if force else info.id
        if self._storage.delete_lock(name, lock_id, timeout=timeout):
            log.info("lock released on %s (id=%s, force=%s)", name, info.id, force)
            return LockResult(status=LockStatus.RELEASED)

        # Delete matched nothing: either unlocked, or held under another id.
        holder = self._storage.get_lock(name, timeout=timeout)
        if holder is None:
            raise LockNotFoundError(f"state {name!r} is not locked")
        log.warning("unlock on %s refused for id=%s: held by id=%s", name, info.id, holder.id)
        return LockResult(status=LockStatus.CONFLICT, lock=holder)


__all__ = ["LockCoordinator"]
