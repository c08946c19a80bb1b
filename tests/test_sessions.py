"""
Tests for session records and session stores.

The Redis store is exercised against a small in-test fake exposing the
handful of client calls the store uses.
"""

from datetime import timedelta

import pytest

from conftest import T0, as_set, make_session
from roadlimit_core.sessions import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionRecord,
    StoreUnavailable,
    oldest_first,
    session_set,
)


class FakePipeline:
    def __init__(self, client):
        self._client = client
        self._ops = []

    def delete(self, key):
        self._ops.append(("delete", key, None))

    def hset(self, key, mapping):
        self._ops.append(("hset", key, mapping))

    def execute(self):
        for op, key, mapping in self._ops:
            if op == "delete":
                self._client.data.pop(key, None)
            else:
                self._client.data.setdefault(key, {}).update(
                    {k.encode(): v.encode() for k, v in mapping.items()}
                )


class FakeRedis:
    def __init__(self):
        self.data = {}

    def hgetall(self, key):
        return dict(self.data.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)

    def scan_iter(self, match):
        prefix = match.rstrip("*")
        return [k.encode() for k in self.data if k.startswith(prefix)]


class BrokenRedis:
    def __getattr__(self, name):
        raise ConnectionError("connection refused")


class TestSessionRecord:
    """Tests for sessions.SessionRecord."""

    def test_deadlines_are_strict(self):
        record = make_session("a", idle_expiry=T0, absolute_expiry=T0)
        assert not record.is_idle(T0)
        assert not record.is_expired(T0)
        assert record.is_idle(T0 + timedelta(seconds=1))
        assert record.is_expired(T0 + timedelta(seconds=1))

    def test_no_deadlines(self):
        record = make_session("a")
        assert not record.is_idle(T0 + timedelta(days=365))
        assert not record.is_expired(T0 + timedelta(days=365))

    def test_dict_conversion(self):
        record = make_session("a", 3, idle_expiry=T0 + timedelta(hours=2))
        data = record.to_dict()

        assert data["login_time"] == "2026-01-05T09:03:00"
        assert data["absolute_expiry"] is None
        assert SessionRecord.from_dict(data) == record


class TestSessionSet:
    """Tests for session set helpers."""

    def test_duplicate_tokens_rejected(self):
        with pytest.raises(ValueError):
            session_set([make_session("a", 0), make_session("a", 1)])

    def test_oldest_first(self):
        sessions = session_set([make_session("c", 2), make_session("b", 1), make_session("a", 1)])
        assert [s.token for s in oldest_first(sessions)] == ["a", "b", "c"]


class TestInMemorySessionStore:
    """Tests for sessions.InMemorySessionStore."""

    def test_save_and_load(self):
        store = InMemorySessionStore()
        store.save("1", as_set(make_session("a"), make_session("b")))

        assert set(store.load("1")) == {"a", "b"}
        assert store.load("2") == {}
        assert store.count == 2
        assert store.users() == ["1"]

    def test_load_returns_copy(self):
        store = InMemorySessionStore()
        store.save("1", as_set(make_session("a")))

        loaded = store.load("1")
        loaded.clear()
        assert set(store.load("1")) == {"a"}

    def test_empty_save_forgets_user(self):
        store = InMemorySessionStore()
        store.save("1", as_set(make_session("a")))
        store.save("1", {})

        assert store.users() == []
        assert store.count == 0


class TestRedisSessionStore:
    """Tests for sessions.RedisSessionStore."""

    def test_save_and_load(self):
        client = FakeRedis()
        store = RedisSessionStore(client)
        sessions = as_set(make_session("a", 0), make_session("b", 1, idle_expiry=T0))

        assert store.save("42", sessions) is True
        assert store.load("42") == sessions
        assert store.users() == ["42"]

    def test_save_replaces_previous_set(self):
        client = FakeRedis()
        store = RedisSessionStore(client)
        store.save("42", as_set(make_session("a", 0), make_session("b", 1)))
        store.save("42", as_set(make_session("b", 1)))

        assert set(store.load("42")) == {"b"}

        store.save("42", {})
        assert store.load("42") == {}
        assert store.users() == []

    def test_failures_raise_store_unavailable(self):
        store = RedisSessionStore(BrokenRedis())

        with pytest.raises(StoreUnavailable):
            store.load("42")
        with pytest.raises(StoreUnavailable):
            store.save("42", as_set(make_session("a")))
        with pytest.raises(StoreUnavailable):
            store.users()
