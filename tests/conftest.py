import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `state.*` / `common.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def mongo_db():
    import mongomock

    return mongomock.MongoClient()["terradb"]


@pytest.fixture
def storage(mongo_db):
    from state.mongo_store import MongoStorage

    store = MongoStorage(mongo_db)
    store.ensure_indexes()
    return store


@pytest.fixture
def engine(storage):
    from state.engine import StateEngine

    return StateEngine(storage)
