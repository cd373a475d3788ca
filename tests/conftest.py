"""Shared pytest fixtures."""

import pytest

from reqhive import storage
from reqhive.store import Collection, CollectionStore
from reqhive.sync import SyncEngine


@pytest.fixture
def store() -> CollectionStore:
    """An in-memory collection that is not bound to disk."""
    return CollectionStore(Collection.new("Demo"))


@pytest.fixture
def collections_dir(tmp_path):
    return storage.get_collections_dir(tmp_path / "collections")


@pytest.fixture
def disk_store(collections_dir) -> CollectionStore:
    return CollectionStore(storage.create_collection("Demo", collections_dir=collections_dir))


@pytest.fixture
def engine():
    engine = SyncEngine(autosave_interval=5.0, lock_timeout=1.0)
    yield engine
    engine.shutdown()
