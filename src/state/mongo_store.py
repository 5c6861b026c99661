from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pymongo
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from pydantic import ValidationError

from .codec import StateCodec
from .errors import NotFoundError, StoreError
from .models import (
    LockInfo,
    PageMetadata,
    StateDocument,
    StatePage,
    StateRecord,
    parse_timestamp,
)


log = logging.getLogger(__name__)

DEFAULT_DATABASE = "terradb"
STATES_COLLECTION = "terraform_states"
LOCKS_COLLECTION = "locks"

# Seconds; every store call runs under this deadline unless overridden.
DEFAULT_TIMEOUT = 5.0
CONNECT_TIMEOUT = 10.0
LOCK_UPSERT_ATTEMPTS = 3


def paginate(pipeline: List[Dict[str, Any]], page: int, page_size: int) -> List[Dict[str, Any]]:
    """Append a $facet stage computing the total and one page slice together.

    Both branches read the same input documents, so the count and the slice
    come from a single request.
    """
    skip = page_size * (page - 1)
    return pipeline + [
        {
            "$facet": {
                "metadata": [
                    {"$count": "total"},
                    {"$addFields": {"page": page}},
                ],
                "data": [
                    {"$skip": skip},
                    {"$limit": page_size},
                ],
            }
        }
    ]


def latest_per_name_pipeline() -> List[Dict[str, Any]]:
    # Sorting by serial before grouping makes $last pick the highest serial.
    return [
        {"$sort": {"name": ASCENDING, "state.serial": ASCENDING}},
        {
            "$group": {
                "_id": "$name",
                "name": {"$last": "$name"},
                "timestamp": {"$last": "$timestamp"},
                "source": {"$last": "$source"},
                "state": {"$last": "$state"},
            }
        },
        {"$sort": {"_id": ASCENDING}},
    ]


def serials_pipeline(name: str) -> List[Dict[str, Any]]:
    return [
        {"$match": {"name": name}},
        {"$sort": {"state.serial": ASCENDING}},
    ]


class MongoStorage:
    """
    MongoDB-backed storage for Terraform states and their locks.

    Physical layout (database `terradb` by default)
    - `terraform_states`: one record per (name, serial):
      `{name, timestamp, source, state}`.
    - `locks`: at most one record per name: `{name, lock}`.

    Notes
    - Store failures are raised as `StoreError` wrapping the driver error.
      Only the lock upsert is re-run, after losing an insert race.
    - `timeout` on each method overrides the default per-call deadline, e.g.
      to fit within what is left of an inbound request.
    """

    def __init__(
        self,
        database: Any,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        codec: Optional[StateCodec] = None,
        client: Optional[MongoClient] = None,
    ) -> None:
        self._db = database
        self._states = database[STATES_COLLECTION]
        self._locks = database[LOCKS_COLLECTION]
        self._timeout = timeout
        self._codec = codec or StateCodec()
        self._client = client

    # -------- Construction helpers --------
    @classmethod
    def connect(
        cls,
        url: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        database: str = DEFAULT_DATABASE,
        timeout: float = DEFAULT_TIMEOUT,
        fernet_key: Optional[str | bytes] = None,
    ) -> "MongoStorage":
        """Connect, ping the primary and make sure indexes exist."""
        kwargs: Dict[str, Any] = {"serverSelectionTimeoutMS": int(CONNECT_TIMEOUT * 1000)}
        if username:
            kwargs["username"] = username
            kwargs["password"] = password
        client: MongoClient = MongoClient(url, **kwargs)
        try:
            with pymongo.timeout(CONNECT_TIMEOUT):
                client.admin.command("ping")
        except PyMongoError as ex:
            client.close()
            raise StoreError(f"failed to connect to MongoDB: {ex}") from ex

        store = cls(client[database], timeout=timeout, codec=StateCodec(fernet_key), client=client)
        store.ensure_indexes()
        log.info("connected to MongoDB database %s", database)
        return store

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "MongoStorage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def ensure_indexes(self) -> None:
        with self._call("create indexes"):
            self._states.create_index(
                [("name", ASCENDING), ("state.serial", ASCENDING)],
                unique=True,
                name="name_serial",
            )
            self._locks.create_index([("name", ASCENDING)], unique=True, name="name")

    def get_name(self) -> str:
        return "mongodb"

    # -------- States --------
    def get_state(self, name: str, serial: int = 0, *, timeout: Optional[float] = None) -> StateDocument:
        """Fetch one version of `name`; serial 0 selects the highest serial."""
        query: Dict[str, Any] = {"name": name}
        if serial != 0:
            query["state.serial"] = serial

        with self._call("get state", timeout):
            raw = self._states.find_one(query, sort=[("state.serial", DESCENDING)])

        if raw is None:
            log.debug("no state %s at serial %s", name, serial)
            raise NotFoundError(f"state {name!r} (serial {serial}) not found")
        return self._codec.decode(self._field(raw, "state"))

    def insert_state(
        self,
        doc: StateDocument,
        timestamp: str,
        source: str,
        name: str,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Upsert by (name, serial): a new serial adds a version, an existing one is replaced."""
        record = {
            "name": name,
            "timestamp": timestamp,
            "source": source,
            "state": self._codec.encode(doc),
        }
        with self._call("insert state", timeout):
            self._states.replace_one({"name": name, "state.serial": doc.serial}, record, upsert=True)
        log.info("stored state %s serial %s from %s", name, doc.serial, source)

    def remove_state(self, name: str, *, timeout: Optional[float] = None) -> int:
        with self._call("remove state", timeout):
            result = self._states.delete_many({"name": name})
        log.info("removed %d version(s) of state %s", result.deleted_count, name)
        return result.deleted_count

    def list_states(self, page: int, page_size: int, *, timeout: Optional[float] = None) -> StatePage:
        pipeline = paginate(latest_per_name_pipeline(), page, page_size)
        return self._aggregate_page(pipeline, page, "list states", timeout)

    def list_state_serials(
        self, name: str, page: int, page_size: int, *, timeout: Optional[float] = None
    ) -> StatePage:
        pipeline = paginate(serials_pipeline(name), page, page_size)
        return self._aggregate_page(pipeline, page, "list state serials", timeout)

    # -------- Locks --------
    def get_lock(self, name: str, *, timeout: Optional[float] = None) -> Optional[LockInfo]:
        with self._call("get lock status", timeout):
            raw = self._locks.find_one({"name": name})
        if raw is None:
            return None
        return self._decode_lock(raw)

    def get_locks(self, names: Iterable[str], *, timeout: Optional[float] = None) -> Dict[str, LockInfo]:
        wanted = list(names)
        if not wanted:
            return {}
        with self._call("get lock statuses", timeout):
            raws = list(self._locks.find({"name": {"$in": wanted}}))
        return {str(raw.get("name")): self._decode_lock(raw) for raw in raws}

    def insert_lock_if_absent(
        self, name: str, info: LockInfo, *, timeout: Optional[float] = None
    ) -> Optional[LockInfo]:
        payload = info.model_dump(by_alias=True)
        with self._call("lock state", timeout):
            for _ in range(LOCK_UPSERT_ATTEMPTS):
                try:
                    before = self._locks.find_one_and_update(
                        {"name": name},
                        {"$setOnInsert": {"lock": payload}},
                        upsert=True,
                        return_document=ReturnDocument.BEFORE,
                    )
                except DuplicateKeyError:
                    # Lost an insert race on the unique name index; the winner may
                    # already have released, so re-run the upsert rather than re-read.
                    continue
                break
            else:
                raise StoreError(f"failed to lock state: {name!r} kept changing hands")
        if before is None:
            return None
        return self._decode_lock(before)

    def delete_lock(
        self, name: str, lock_id: Optional[str] = None, *, timeout: Optional[float] = None
    ) -> bool:
        query: Dict[str, Any] = {"name": name}
        if lock_id is not None:
            query["lock.ID"] = lock_id
        with self._call("unlock state", timeout):
            result = self._locks.delete_one(query)
        return result.deleted_count == 1

    # -------- Internal --------
    @contextmanager
    def _call(self, what: str, timeout: Optional[float] = None) -> Iterator[None]:
        try:
            with pymongo.timeout(timeout if timeout is not None else self._timeout):
                yield
        except PyMongoError as ex:
            raise StoreError(f"failed to {what}: {ex}") from ex

    def _aggregate_page(
        self, pipeline: List[Dict[str, Any]], page: int, what: str, timeout: Optional[float]
    ) -> StatePage:
        with self._call(what, timeout):
            results = list(self._states.aggregate(pipeline))

        facet = results[0] if results else {}
        metadata = facet.get("metadata") or []
        total = int(metadata[0].get("total", 0)) if metadata else 0
        data = [self._decode_record(raw) for raw in facet.get("data") or []]
        return StatePage(metadata=PageMetadata(total=total, page=page), data=data)

    def _decode_record(self, raw: Dict[str, Any]) -> StateRecord:
        timestamp = str(raw.get("timestamp") or "")
        try:
            last_modified = parse_timestamp(timestamp)
        except ValueError as ex:
            raise StoreError(f"failed to convert timestamp {timestamp!r}: {ex}") from ex
        return StateRecord(
            name=str(self._field(raw, "name")),
            timestamp=timestamp,
            source=str(raw.get("source") or ""),
            last_modified=last_modified,
            state=self._codec.decode(self._field(raw, "state")),
            locked=False,
            lock=None,
        )

    @staticmethod
    def _decode_lock(raw: Dict[str, Any]) -> LockInfo:
        try:
            return LockInfo.model_validate(raw.get("lock") or {})
        except ValidationError as ex:
            raise StoreError(f"malformed lock record: {ex}") from ex

    @staticmethod
    def _field(raw: Dict[str, Any], key: str) -> Any:
        if key not in raw:
            raise StoreError(f"malformed state record: missing {key!r}")
        return raw[key]


__all__ = [
    "MongoStorage",
    "paginate",
    "latest_per_name_pipeline",
    "serials_pipeline",
    "DEFAULT_DATABASE",
    "DEFAULT_TIMEOUT",
]
