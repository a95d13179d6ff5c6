import asyncio

import pytest

from lesson_sync.config import Settings
from lesson_sync.database import init_db
from lesson_sync.services.storage import (
    KeyValueStore,
    MemoryKeyValueStore,
    SQLiteKeyValueStore,
    create_storage,
)


@pytest.fixture
def sqlite_store(tmp_path):
    path = str(tmp_path / "kv.db")
    asyncio.run(init_db(path))
    return SQLiteKeyValueStore(path)


@pytest.fixture(params=["memory", "sqlite"])
def kv(request, tmp_path):
    if request.param == "memory":
        return MemoryKeyValueStore()
    return request.getfixturevalue("sqlite_store")


def test_get_missing_key_returns_none(kv):
    assert kv.get_item("nope") is None


def test_set_overwrites(kv):
    kv.set_item("k", "one")
    kv.set_item("k", "two")
    assert kv.get_item("k") == "two"


def test_remove_is_idempotent(kv):
    kv.set_item("k", "v")
    kv.remove_item("k")
    kv.remove_item("k")
    assert kv.get_item("k") is None


def test_keys_filters_by_prefix(kv):
    kv.set_item("revalida_video_progress_b", "{}")
    kv.set_item("revalida_video_progress_a", "{}")
    kv.set_item("revalida_heartbeat_queue", "[]")

    assert kv.keys("revalida_video_progress_") == [
        "revalida_video_progress_a",
        "revalida_video_progress_b",
    ]
    assert len(kv.keys()) == 3


def test_sqlite_store_survives_reopening(sqlite_store):
    sqlite_store.set_item("k", "v")
    assert SQLiteKeyValueStore(sqlite_store.db_path).get_item("k") == "v"


def test_create_storage_picks_backend(tmp_path):
    assert isinstance(
        create_storage(Settings(storage_backend="memory")), MemoryKeyValueStore
    )
    store = create_storage(
        Settings(storage_backend="sqlite", storage_path=str(tmp_path / "x.db"))
    )
    assert isinstance(store, SQLiteKeyValueStore)

    with pytest.raises(ValueError):
        create_storage(Settings(storage_backend="redis"))


def test_incomplete_adapter_cannot_be_instantiated():
    class WriteOnlyStore(KeyValueStore):
        def set_item(self, key, value):
            pass

    with pytest.raises(TypeError):
        WriteOnlyStore()
