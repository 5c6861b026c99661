from __future__ import annotations

from typing import Optional

from .base import Storage
from .errors import NotFoundError
from .models import ModuleState, ResourceState, StateDocument


ROOT_MODULE = "root"


def find_module(doc: StateDocument, module: str) -> Optional[ModuleState]:
    """First module whose path contains `module` as one of its segments.

    This is a membership test, not path equality: "web" matches both
    ["root", "web"] and ["root", "web", "db"].
    """
    for mod in doc.modules:
        if module in mod.path:
            return mod
    return None


def find_resource(doc: StateDocument, module: str, name: str) -> ResourceState:
    mod = find_module(doc, module)
    if mod is None:
        raise NotFoundError(f"module {module!r} not found")
    resource = mod.resources.get(name)
    if resource is None:
        raise NotFoundError(f"resource {name!r} not found in module {module!r}")
    return resource


class ResourceResolver:
    """Looks up a single resource in the latest version of a state."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def get_resource(
        self,
        state: str,
        module: str,
        name: str,
        *,
        timeout: Optional[float] = None,
    ) -> ResourceState:
        doc = self._storage.get_state(state, 0, timeout=timeout)
        return find_resource(doc, module or ROOT_MODULE, name)


__all__ = ["ResourceResolver", "find_module", "find_resource", "ROOT_MODULE"]
