from __future__ import annotations

from typing import Any, Dict, List

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from state.errors import NotFoundError, StoreError
from state.locks import LockCoordinator
from state.models import LockInfo, LockStatus, StateDocument
from state.mongo_store import (
    LOCK_UPSERT_ATTEMPTS,
    MongoStorage,
    latest_per_name_pipeline,
    paginate,
    serials_pipeline,
)


def _doc(serial: int, *, lineage: str = "lin-1", marker: str = "") -> StateDocument:
    return StateDocument.model_validate(
        {
            "version": 3,
            "serial": serial,
            "lineage": lineage,
            "modules": [{"path": ["root"], "outputs": {"marker": marker}, "resources": {}}],
        }
    )


def test_get_state_latest_returns_highest_serial(storage: MongoStorage):
    storage.insert_state(_doc(5), "20240101000000", "direct", "net")
    storage.insert_state(_doc(3), "20240102000000", "direct", "net")

    assert storage.get_state("net", 0).serial == 5
    assert storage.get_state("net", 3).serial == 3


def test_insert_same_serial_overwrites_in_place(storage: MongoStorage, mongo_db):
    storage.insert_state(_doc(2, marker="first"), "20240101000000", "direct", "net")
    storage.insert_state(_doc(2, marker="second"), "20240101000001", "direct", "net")

    assert mongo_db["terraform_states"].count_documents({"name": "net", "state.serial": 2}) == 1
    got = storage.get_state("net", 2)
    assert got.modules[0].outputs == {"marker": "second"}


def test_insert_is_idempotent(storage: MongoStorage, mongo_db):
    for _ in range(3):
        storage.insert_state(_doc(1), "20240101000000", "direct", "net")
    assert mongo_db["terraform_states"].count_documents({"name": "net"}) == 1


def test_insert_records_provenance(storage: MongoStorage, mongo_db):
    storage.insert_state(_doc(1), "20240101120000", "s3://bucket/key", "net")
    raw = mongo_db["terraform_states"].find_one({"name": "net"})
    assert raw["timestamp"] == "20240101120000"
    assert raw["source"] == "s3://bucket/key"
    assert raw["state"]["serial"] == 1


def test_get_state_unknown_name_raises_not_found(storage: MongoStorage):
    with pytest.raises(NotFoundError):
        storage.get_state("missing", 0)


def test_get_state_unknown_serial_raises_not_found(storage: MongoStorage):
    storage.insert_state(_doc(1), "20240101000000", "direct", "net")
    with pytest.raises(NotFoundError):
        storage.get_state("net", 9)


def test_remove_state_deletes_every_version(storage: MongoStorage):
    for serial in (1, 2, 3):
        storage.insert_state(_doc(serial), "20240101000000", "direct", "net")
    storage.insert_state(_doc(1), "20240101000000", "direct", "other")

    assert storage.remove_state("net") == 3
    with pytest.raises(NotFoundError):
        storage.get_state("net", 0)
    assert storage.get_state("other", 0).serial == 1


def test_list_states_paginates_distinct_names(storage: MongoStorage):
    for name in ("a", "b", "c", "d", "e"):
        storage.insert_state(_doc(1), "20240101000000", "direct", name)
        storage.insert_state(_doc(2), "20240102000000", "direct", name)

    first = storage.list_states(1, 2)
    assert first.metadata.total == 5
    assert first.metadata.page == 1
    assert len(first.data) == 2

    last = storage.list_states(3, 2)
    assert last.metadata.total == 5
    assert len(last.data) == 1

    seen = [r.name for p in (1, 2, 3) for r in storage.list_states(p, 2).data]
    assert sorted(seen) == ["a", "b", "c", "d", "e"]
    assert len(set(seen)) == 5


def test_list_states_reports_latest_version_per_name(storage: MongoStorage):
    storage.insert_state(_doc(4, marker="new"), "20240105000000", "direct", "net")
    storage.insert_state(_doc(2, marker="old"), "20240106000000", "import", "net")

    page = storage.list_states(1, 10)
    assert page.metadata.total == 1
    record = page.data[0]
    assert record.name == "net"
    assert record.state.serial == 4
    assert record.timestamp == "20240105000000"
    assert record.last_modified is not None and record.last_modified.year == 2024
    assert record.locked is False


def test_list_states_beyond_last_page_is_empty(storage: MongoStorage):
    storage.insert_state(_doc(1), "20240101000000", "direct", "net")
    page = storage.list_states(5, 10)
    assert page.data == []
    assert page.metadata.total == 1
    assert page.metadata.page == 5


def test_list_states_on_empty_store(storage: MongoStorage):
    page = storage.list_states(1, 10)
    assert page.data == []
    assert page.metadata.total == 0
    assert page.metadata.page == 1


def test_list_state_serials_ascending_and_paginated(storage: MongoStorage):
    for serial in (7, 1, 4, 10, 2):
        storage.insert_state(_doc(serial), "20240101000000", "direct", "net")
    storage.insert_state(_doc(3), "20240101000000", "direct", "other")

    page = storage.list_state_serials("net", 1, 100)
    serials = [r.state.serial for r in page.data]
    assert serials == [1, 2, 4, 7, 10]
    assert page.metadata.total == 5

    second = storage.list_state_serials("net", 2, 2)
    assert [r.state.serial for r in second.data] == [4, 7]


def test_list_state_serials_unknown_name_is_empty(storage: MongoStorage):
    page = storage.list_state_serials("missing", 1, 10)
    assert page.data == []
    assert page.metadata.total == 0


def test_paginate_appends_single_facet_stage():
    base = serials_pipeline("net")
    pipeline = paginate(base, 3, 20)
    assert pipeline[: len(base)] == base
    assert len(pipeline) == len(base) + 1
    facet = pipeline[-1]["$facet"]
    assert facet["metadata"] == [{"$count": "total"}, {"$addFields": {"page": 3}}]
    assert facet["data"] == [{"$skip": 40}, {"$limit": 20}]


def test_latest_pipeline_sorts_by_serial_before_grouping():
    stages = latest_per_name_pipeline()
    assert "$sort" in stages[0]
    assert stages[0]["$sort"]["state.serial"] == 1
    assert "$group" in stages[1]


def test_malformed_timestamp_in_listing_raises_store_error(storage: MongoStorage, mongo_db):
    mongo_db["terraform_states"].insert_one(
        {"name": "net", "timestamp": "yesterday", "source": "direct", "state": {"serial": 1}}
    )
    with pytest.raises(StoreError):
        storage.list_states(1, 10)


# --- Failure paths against a collection that cannot reach the server ---

class _DownCollection:
    def __getattr__(self, name: str):
        def _fail(*_args: Any, **_kwargs: Any):
            raise ServerSelectionTimeoutError("no servers available")

        return _fail


def _down_storage() -> MongoStorage:
    db: Dict[str, Any] = {"terraform_states": _DownCollection(), "locks": _DownCollection()}
    return MongoStorage(db, timeout=0.5)


@pytest.mark.parametrize(
    "call, message",
    [
        (lambda s: s.get_state("net", 0), "failed to get state"),
        (lambda s: s.insert_state(_doc(1), "20240101000000", "direct", "net"), "failed to insert state"),
        (lambda s: s.remove_state("net"), "failed to remove state"),
        (lambda s: s.list_states(1, 10), "failed to list states"),
        (lambda s: s.list_state_serials("net", 1, 10), "failed to list state serials"),
        (lambda s: s.get_lock("net"), "failed to get lock status"),
    ],
)
def test_driver_errors_are_wrapped_in_store_error(call, message):
    with pytest.raises(StoreError) as excinfo:
        call(_down_storage())
    assert message in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, ServerSelectionTimeoutError)


class _RecordingCollection:
    def __init__(self) -> None:
        self.pipelines: List[List[Dict[str, Any]]] = []

    def aggregate(self, pipeline):
        self.pipelines.append(pipeline)
        return iter([{"metadata": [{"total": 0, "page": 1}], "data": []}])


def test_listing_issues_one_aggregate_call():
    coll = _RecordingCollection()
    store = MongoStorage({"terraform_states": coll, "locks": coll})
    store.list_states(1, 10)
    store.list_state_serials("net", 2, 5)
    assert len(coll.pipelines) == 2
    assert coll.pipelines[1][0] == {"$match": {"name": "net"}}
    assert coll.pipelines[1][-1]["$facet"]["data"] == [{"$skip": 5}, {"$limit": 5}]


# --- Lock upsert racing another writer on the unique name index ---

class _RacyLocks:
    """Raises DuplicateKeyError for the first `collisions` upserts, then answers with `after`.

    `find_one` always reports no lock: the racing holder has already released.
    """

    def __init__(self, collisions: int, after: Any = None) -> None:
        self.collisions = collisions
        self.after = after
        self.upserts = 0
        self.reads = 0

    def find_one_and_update(self, *_args: Any, **_kwargs: Any):
        self.upserts += 1
        if self.upserts <= self.collisions:
            raise DuplicateKeyError("E11000 duplicate key error collection: terradb.locks index: name")
        return self.after

    def find_one(self, *_args: Any, **_kwargs: Any):
        self.reads += 1
        return None


def _racy_coordinator(locks: _RacyLocks) -> LockCoordinator:
    return LockCoordinator(MongoStorage({"terraform_states": _RecordingCollection(), "locks": locks}))


def test_lock_after_lost_insert_race_retries_upsert_and_acquires():
    locks = _RacyLocks(collisions=1, after=None)

    result = _racy_coordinator(locks).lock_state("net", LockInfo(id="B", who="bob"))

    assert result.status == LockStatus.ACQUIRED
    assert locks.upserts == 2
    assert locks.reads == 0


def test_lock_after_lost_insert_race_reports_the_winner():
    winner = {"name": "net", "lock": {"ID": "A", "Who": "alice", "Path": "net"}}
    locks = _RacyLocks(collisions=1, after=winner)

    result = _racy_coordinator(locks).lock_state("net", LockInfo(id="B", who="bob"))

    assert result.status == LockStatus.CONFLICT
    assert result.lock is not None and result.lock.id == "A"


def test_lock_gives_up_when_every_upsert_collides():
    locks = _RacyLocks(collisions=100)

    with pytest.raises(StoreError) as excinfo:
        _racy_coordinator(locks).lock_state("net", LockInfo(id="B"))
    assert "failed to lock state" in str(excinfo.value)
    assert locks.upserts == LOCK_UPSERT_ATTEMPTS
