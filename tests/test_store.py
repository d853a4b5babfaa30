#!/usr/bin/env python3
"""
Tests for the persistent key-value stores.

Both implementations run through the same behaviour checks.
"""
from datetime import timedelta

import pytest

from vigil.errors import PersistentStoreUnavailable
from vigil.store import InMemoryStore, SQLiteStore

from conftest import T0

pytestmark = pytest.mark.store


@pytest.fixture(params=["memory", "sqlite"])
def kv(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
    else:
        store = SQLiteStore(tmp_path / "state.db")
        yield store
        store.close()


class TestBasicOperations:

    def test_get_missing(self, kv):
        assert kv.get("nope") is None

    def test_put_and_get(self, kv):
        kv.put("trust:alice", {"patterns": {"a": 1}, "list": [1, 2]})
        assert kv.get("trust:alice") == {"patterns": {"a": 1}, "list": [1, 2]}

    def test_put_replaces(self, kv):
        kv.put("k", 1)
        kv.put("k", 2)
        assert kv.get("k") == 2

    def test_values_are_copies(self, kv):
        value = {"n": 1}
        kv.put("k", value)
        value["n"] = 2
        kv.get("k")["n"] = 3
        assert kv.get("k") == {"n": 1}

    def test_delete(self, kv):
        kv.put("k", 1)
        assert kv.delete("k")
        assert not kv.delete("k")
        assert kv.get("k") is None

    def test_unserializable_value(self, kv):
        with pytest.raises(PersistentStoreUnavailable):
            kv.put("k", object())


class TestKeys:

    def test_prefix_listing_is_sorted(self, kv):
        for key in ("mode:bob", "mode:alice", "trust:alice"):
            kv.put(key, 1)
        assert kv.keys("mode:") == ["mode:alice", "mode:bob"]
        assert kv.keys() == ["mode:alice", "mode:bob", "trust:alice"]

    @pytest.mark.parametrize("prefix,expected", [
        ("a_", ["a_b"]),
        ("a%", ["a%b"]),
    ])
    def test_wildcards_in_prefix_are_literal(self, kv, prefix, expected):
        for key in ("a_b", "axb", "a%b", "ayyb"):
            kv.put(key, 1)
        assert kv.keys(prefix) == expected

    def test_prefix_is_case_sensitive(self, kv):
        kv.put("Trust:x", 1)
        kv.put("trust:y", 1)
        assert kv.keys("trust:") == ["trust:y"]


class TestExpiry:

    def test_expired_entry_is_still_returned(self, kv):
        kv.put("backup:1", {"x": 1}, expires_at=T0)
        assert kv.get("backup:1") == {"x": 1}

    def test_delete_expired(self, kv):
        kv.put("old", 1, expires_at=T0 - timedelta(seconds=1))
        kv.put("edge", 1, expires_at=T0)
        kv.put("new", 1, expires_at=T0 + timedelta(seconds=60))
        kv.put("forever", 1)
        assert kv.delete_expired(T0) == 2
        assert kv.keys() == ["forever", "new"]


class TestSQLiteStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "state.db"
        first = SQLiteStore(path)
        first.put("mode:alice", {"mode": "paranoid"})
        first.close()
        second = SQLiteStore(path)
        try:
            assert second.get("mode:alice") == {"mode": "paranoid"}
        finally:
            second.close()

    def test_creates_parent_directory(self, tmp_path):
        store = SQLiteStore(tmp_path / "nested" / "dir" / "state.db")
        try:
            assert (tmp_path / "nested" / "dir").is_dir()
        finally:
            store.close()

    def test_unopenable_path(self, tmp_path):
        with pytest.raises(PersistentStoreUnavailable):
            SQLiteStore(tmp_path)

    def test_reconnects_after_close(self, tmp_path):
        store = SQLiteStore(tmp_path / "state.db")
        store.put("k", 1)
        store.close()
        assert store.get("k") == 1
        store.close()
