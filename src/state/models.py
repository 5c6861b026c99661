from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
DEFAULT_SOURCE = "direct"
# Serials are stored as BSON int64.
MAX_SERIAL = 2**63 - 1


def format_timestamp(dt: Optional[datetime] = None) -> str:
    """Render `dt` (default: now, UTC) in the compact YYYYMMDDhhmmss layout."""
    dt = dt or datetime.now(timezone.utc)
    return dt.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a YYYYMMDDhhmmss timestamp; raises ValueError on bad input."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class ResourceState(BaseModel):
    """
    A single managed resource inside a module.

    Only the addressing-relevant fields are typed; anything else Terraform
    writes (instance attributes, meta, tainted flags) is kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    provider: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    primary: Optional[Dict[str, Any]] = None
    deposed: List[Dict[str, Any]] = Field(default_factory=list)


class ModuleState(BaseModel):
    model_config = ConfigDict(extra="allow")

    path: List[str] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    resources: Dict[str, ResourceState] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)


class StateDocument(BaseModel):
    """
    A Terraform state snapshot.

    Fields
    - serial: caller-assigned version counter; with the state name it identifies
      one stored version. Never generated by the engine.
    - lineage: opaque provenance string, compared by callers only.
    - modules: ordered module records, each with its nesting `path` and a
      resource-name -> resource mapping.
    """

    model_config = ConfigDict(extra="allow")

    version: Optional[int] = None
    terraform_version: Optional[str] = None
    serial: int = Field(default=0, ge=-MAX_SERIAL - 1, le=MAX_SERIAL)
    lineage: str = ""
    modules: List[ModuleState] = Field(default_factory=list)


class LockInfo(BaseModel):
    """
    Exclusive claim on a state name, as sent by Terraform's http backend.

    Serialized with Terraform's capitalized keys (ID, Operation, ...). All
    descriptive fields are opaque to the engine; `path` is overwritten with the
    locked state's name on acquisition.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default="", alias="ID")
    operation: str = Field(default="", alias="Operation")
    info: str = Field(default="", alias="Info")
    who: str = Field(default="", alias="Who")
    version: str = Field(default="", alias="Version")
    created: str = Field(default="", alias="Created")
    path: str = Field(default="", alias="Path")


class StateRecord(BaseModel):
    """One stored version as returned by listings, joined with lock status."""

    name: str
    timestamp: str = ""
    source: str = ""
    last_modified: Optional[datetime] = None
    state: StateDocument
    locked: bool = False
    lock: Optional[LockInfo] = None


class PageMetadata(BaseModel):
    total: int = 0
    page: int = 1


class StatePage(BaseModel):
    metadata: PageMetadata
    data: List[StateRecord] = Field(default_factory=list)


class LockStatus(str, Enum):
    ACQUIRED = "acquired"
    RELEASED = "released"
    ALREADY_HELD = "already_held"
    CONFLICT = "conflict"


class LockResult(BaseModel):
    """Outcome of a lock/unlock request; `lock` carries the holder when refused."""

    status: LockStatus
    lock: Optional[LockInfo] = None

    @property
    def ok(self) -> bool:
        return self.status in (LockStatus.ACQUIRED, LockStatus.RELEASED)
