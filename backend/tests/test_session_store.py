"""Tests for session_store.py: reconnect tokens and session expiry."""
import sys
import os
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import config
from session_store import SessionStore


def live(_match_id):
    return True


class TestSessions:
    def test_tokens_are_unguessable_and_distinct(self):
        store = SessionStore()
        a = store.create_session("c-1", "ABC123", "Alice", "host", True)
        b = store.create_session("c-2", "ABC123", "Bob", "player2", False)
        assert a.reconnect_token != b.reconnect_token
        assert a.id != b.id
        assert len(a.reconnect_token) >= 32
        assert a.reconnect_token != a.id

    def test_lookups(self):
        store = SessionStore()
        s = store.create_session("c-1", "ABC123", "Alice", "host", True)
        assert store.get(s.id) is s
        assert store.find_by_reconnect_token(s.reconnect_token) is s
        assert store.find_by_reconnect_token("wrong") is None
        assert store.find_by_reconnect_token("") is None
        assert store.find_by_connection("c-1") is s
        assert store.find_by_player("ABC123", "Alice") is s
        assert store.find_by_player("ABC123", "Bob") is None

    def test_disconnect_then_reconnect(self):
        store = SessionStore()
        s = store.create_session("c-1", "ABC123", "Alice", "host", True)
        store.disconnect(s.id)
        assert s.connected is False
        assert s.connection_id is None
        assert s.disconnected_at is not None
        assert store.find_by_connection("c-1") is None

        store.reconnect(s.id, "c-2")
        assert s.connected is True
        assert s.connection_id == "c-2"
        assert s.disconnected_at is None
        # the token survives reconnection
        assert store.find_by_reconnect_token(s.reconnect_token) is s

    def test_rotate_token(self):
        store = SessionStore()
        s = store.create_session("c-1", "ABC123", "Alice", "host", True)
        old = s.reconnect_token
        assert store.rotate_token(s.id) is s
        assert s.reconnect_token != old
        assert store.find_by_reconnect_token(old) is None
        assert store.find_by_reconnect_token(s.reconnect_token) is s
        assert store.rotate_token("missing") is None

    def test_delete_for_match(self):
        store = SessionStore()
        store.create_session("c-1", "AAA111", "Alice", "host", True)
        store.create_session("c-2", "AAA111", "Bob", "player2", False)
        keep = store.create_session("c-3", "BBB222", "Carol", "host", True)
        assert store.delete_for_match("AAA111") == 2
        assert list(store.sessions.values()) == [keep]


class TestSweep:
    def test_orphaned_sessions_removed(self):
        store = SessionStore()
        s = store.create_session("c-1", "GONE01", "Alice", "host", True)
        assert store.sweep(lambda mid: False) == [s.id]
        assert store.sessions == {}

    def test_old_sessions_removed(self):
        store = SessionStore()
        s = store.create_session("c-1", "ABC123", "Alice", "host", True)
        assert store.sweep(live, now=time.time()) == []
        later = time.time() + config.SESSION_MAX_AGE_SECONDS + 1
        assert store.sweep(live, now=later) == [s.id]

    def test_long_disconnected_sessions_removed(self):
        store = SessionStore()
        s = store.create_session("c-1", "ABC123", "Alice", "host", True)
        store.disconnect(s.id)
        within = s.disconnected_at + config.SESSION_DISCONNECT_GRACE_SECONDS - 1
        assert store.sweep(live, now=within) == []
        after = s.disconnected_at + config.SESSION_DISCONNECT_GRACE_SECONDS + 1
        assert store.sweep(live, now=after) == [s.id]
