import os

import pytest

from kv_store import KeyValueStore


def test_creates_database_directory(db_path, kv_store):
    assert os.path.isdir(os.path.dirname(db_path))


def test_set_then_get(kv_store):
    kv_store.set("social_bots", [{"type": "telegram", "token": "t", "chat_id": 1}])
    assert kv_store.get("social_bots") == [{"type": "telegram", "token": "t", "chat_id": 1}]


def test_missing_key_raises_key_error(kv_store):
    with pytest.raises(KeyError):
        kv_store.get("nope")


def test_set_overwrites(kv_store):
    kv_store.set("k", 1)
    kv_store.set("k", {"v": 2})
    assert kv_store.get("k") == {"v": 2}
    assert kv_store.keys() == ["k"]


def test_delete(kv_store):
    kv_store.set("k", "v")
    assert kv_store.delete("k") is True
    assert kv_store.delete("k") is False
    with pytest.raises(KeyError):
        kv_store.get("k")


def test_values_persist_across_instances(db_path, kv_store):
    kv_store.set("k", ["a", "b"])
    assert KeyValueStore(database_path=db_path).get("k") == ["a", "b"]


def test_lock_error_detection(kv_store):
    assert kv_store.is_database_lock_error(Exception("IO Error: Could not set lock on file"))
    assert not kv_store.is_database_lock_error(Exception("syntax error"))
