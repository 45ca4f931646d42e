"""Tests for the SQLite event store."""

import sqlite3
import threading

import pytest

from conftest import make_event
from session_replay.storage import EventStore, SessionRecord


def _record(session_id="sess-1", expires_at=2000.0):
    return SessionRecord(session_id, "app-1", created_at=1000.0, expires_at=expires_at)


class TestSessions:
    def test_insert_and_get(self, store):
        with store.transaction() as conn:
            store.insert_session(conn, _record())
        got = store.get_session(store.connection(), "sess-1")
        assert got == _record()

    def test_missing_session(self, store):
        assert store.get_session(store.connection(), "nope") is None

    def test_expired_ids(self, store):
        with store.transaction() as conn:
            store.insert_session(conn, _record("old", expires_at=10.0))
            store.insert_session(conn, _record("new", expires_at=5000.0))
        assert store.expired_session_ids(100.0) == ["old"]

    def test_delete_leaves_tombstone(self, store):
        with store.transaction() as conn:
            store.insert_session(conn, _record())
            store.insert_events(conn, "sess-1", 1, [make_event(i=i) for i in range(3)], 1000.0)
        with store.transaction() as conn:
            assert store.delete_session(conn, "sess-1", 3000.0) == 3
        conn = store.connection()
        assert store.get_session(conn, "sess-1") is None
        assert store.is_tombstoned(conn, "sess-1")
        assert store.count_events() == 0

    def test_purge_tombstones(self, store):
        with store.transaction() as conn:
            store.insert_session(conn, _record("a"))
            store.insert_session(conn, _record("b"))
            store.delete_session(conn, "a", 100.0)
            store.delete_session(conn, "b", 500.0)
        assert store.purge_tombstones(200.0) == 1
        conn = store.connection()
        assert not store.is_tombstoned(conn, "a")
        assert store.is_tombstoned(conn, "b")


class TestEvents:
    def test_insert_and_list_in_sequence_order(self, store):
        events = [make_event(i=i) for i in range(4)]
        with store.transaction() as conn:
            store.insert_session(conn, _record())
            store.insert_events(conn, "sess-1", 1, events, 1000.0)
        listed = store.list_events("sess-1")
        assert [e["sequence"] for e in listed] == [1, 2, 3, 4]
        assert [e["id"] for e in listed] == [e.id for e in events]

    def test_list_after_and_limit(self, store):
        with store.transaction() as conn:
            store.insert_session(conn, _record())
            store.insert_events(conn, "sess-1", 1, [make_event(i=i) for i in range(5)], 1000.0)
        assert [e["sequence"] for e in store.list_events("sess-1", after_seq=2, limit=2)] == [3, 4]

    def test_existing_ids_chunked(self, store):
        events = [make_event(i=i) for i in range(600)]
        with store.transaction() as conn:
            store.insert_session(conn, _record())
            store.insert_events(conn, "sess-1", 1, events, 1000.0)
            ids = [e.id for e in events] + ["missing"]
            found = store.existing_event_ids(conn, "sess-1", ids)
        assert len(found) == 600
        assert "missing" not in found

    def test_duplicate_event_id_violates_constraint(self, store):
        with store.transaction() as conn:
            store.insert_session(conn, _record())
            store.insert_events(conn, "sess-1", 1, [make_event(i=0)], 1000.0)
        with pytest.raises(sqlite3.IntegrityError):
            with store.transaction() as conn:
                store.insert_events(conn, "sess-1", 2, [make_event(i=0)], 1000.0)

    def test_counts(self, store):
        with store.transaction() as conn:
            store.insert_session(conn, _record())
            store.insert_events(conn, "sess-1", 1, [make_event(i=i) for i in range(2)], 1000.0)
        assert store.count_sessions() == 1
        assert store.count_events() == 2
        assert store.count_events("sess-1") == 2
        assert store.count_events("other") == 0


class TestTransactions:
    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                store.insert_session(conn, _record())
                raise RuntimeError("abort")
        assert store.get_session(store.connection(), "sess-1") is None

    def test_threads_share_one_connection(self, store):
        """Short-lived request threads reuse the store's connection, so
        open handles stay fixed however many threads come and go."""
        seen = set()
        seen_lock = threading.Lock()

        def worker(n):
            with store.transaction() as conn:
                store.insert_session(conn, _record(f"sess-{n}"))
            with store.reading() as conn:
                with seen_lock:
                    seen.add(id(conn))
            store.count_sessions()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(200)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert seen == {id(store.connection())}
        assert store.count_sessions() == 200

    def test_closed_store_refuses_work(self, tmp_path):
        s = EventStore(str(tmp_path / "closed.db"))
        s.close()
        s.close()
        with pytest.raises(sqlite3.ProgrammingError):
            s.connection()

    def test_creates_parent_directory(self, tmp_path):
        s = EventStore(str(tmp_path / "nested" / "dir" / "events.db"))
        try:
            assert (tmp_path / "nested" / "dir").is_dir()
        finally:
            s.close()
