"""
tests/test_session_store.py -- Unit tests for SessionStore (sessions/store.py).

Coverage:
  - set/get round trip, unknown ids, TTL expiry on read
  - session ids are never stored in clear
  - regenerate_id() moves data and kills the old id
  - destroy() and purge_expired()
"""

from __future__ import annotations

from collections.abc import Generator

import pytest

from sessions.store import SessionStore

_SECRET = "s" * 32


@pytest.fixture
def store(clock) -> Generator[SessionStore, None, None]:
    s = SessionStore(_SECRET, db_path=":memory:", ttl=600, clock=clock)
    yield s
    s.close()


class TestGetSet:
    def test_round_trip(self, store: SessionStore) -> None:
        sid = store.new_id()
        store.set(sid, {"username": "alice", "rate_limits": {"login": {"count": 2, "window_start": 1.5}}})
        assert store.get(sid) == {"username": "alice", "rate_limits": {"login": {"count": 2, "window_start": 1.5}}}

    def test_unknown_and_empty_ids(self, store: SessionStore) -> None:
        assert store.get("never-issued") is None
        assert store.get("") is None

    def test_ids_are_unique_and_long(self, store: SessionStore) -> None:
        ids = {store.new_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) >= 43 for i in ids)

    def test_raw_id_not_persisted(self, store: SessionStore) -> None:
        sid = store.new_id()
        store.set(sid, {"x": 1})
        stored = [row[0] for row in store._conn.execute("SELECT id_hash FROM sessions")]
        assert sid not in stored
        assert len(stored[0]) == 64

    def test_idle_row_expires_on_read(self, store: SessionStore, clock) -> None:
        sid = store.new_id()
        store.set(sid, {"x": 1})
        clock.advance(600)
        assert store.get(sid) == {"x": 1}
        clock.advance(601)
        assert store.get(sid) is None
        assert store.count() == 0

    def test_different_secret_cannot_read(self, store: SessionStore, clock) -> None:
        sid = store.new_id()
        store.set(sid, {"x": 1})
        other = SessionStore("t" * 32, db_path=":memory:", clock=clock)
        try:
            assert other.get(sid) is None
        finally:
            other.close()


class TestRegenerate:
    def test_moves_data_and_drops_old_id(self, store: SessionStore) -> None:
        old = store.new_id()
        store.set(old, {"username": "alice"})
        new = store.regenerate_id(old, {"username": "alice", "role": "user"})
        assert new != old
        assert store.get(old) is None
        assert store.get(new) == {"username": "alice", "role": "user"}

    def test_explicit_new_id(self, store: SessionStore) -> None:
        old = store.new_id()
        store.set(old, {})
        assert store.regenerate_id(old, {"a": 1}, new_id="chosen-id") == "chosen-id"
        assert store.get("chosen-id") == {"a": 1}


class TestDestroyAndPurge:
    def test_destroy(self, store: SessionStore) -> None:
        sid = store.new_id()
        store.set(sid, {"x": 1})
        store.destroy(sid)
        assert store.get(sid) is None

    def test_purge_removes_only_idle_rows(self, store: SessionStore, clock) -> None:
        stale, fresh = store.new_id(), store.new_id()
        store.set(stale, {"x": 1})
        clock.advance(500)
        store.set(fresh, {"x": 2})
        clock.advance(200)
        assert store.purge_expired() == 1
        assert store.count() == 1
        assert store.get(fresh) == {"x": 2}
