"""Tests for the session ledger."""

import sqlite3
import threading

import pytest

from conftest import make_event
from session_replay.errors import (
    InvalidPayload,
    SessionCapExceeded,
    SessionExpired,
    StorageFailure,
)
from session_replay.ledger import LOCK_STRIPES, SECONDS_PER_DAY, SessionLedger, SessionState


def _events(count, start=0, session_id="sess-1"):
    return [make_event(session_id, start + i) for i in range(count)]


class TestAppend:
    def test_new_session_created(self, ledger, clock):
        result = ledger.append("sess-1", "app-1", _events(3))
        assert result.accepted == 3
        assert (result.first_sequence, result.last_sequence) == (1, 3)
        assert result.state is SessionState.ACTIVE

        info = ledger.get_session("sess-1")
        assert info.application_id == "app-1"
        assert info.created_at == clock.now
        assert info.expires_at == clock.now + 30 * SECONDS_PER_DAY
        assert info.event_count == 3

    def test_sequences_continue_across_batches(self, ledger):
        ledger.append("sess-1", "app-1", _events(2))
        result = ledger.append("sess-1", "app-1", _events(2, start=2))
        assert (result.first_sequence, result.last_sequence) == (3, 4)
        assert [e["sequence"] for e in ledger.events("sess-1")] == [1, 2, 3, 4]

    def test_order_within_batch_preserved(self, ledger):
        batch = _events(4)
        ledger.append("sess-1", "app-1", batch)
        assert [e["id"] for e in ledger.events("sess-1")] == [e.id for e in batch]

    def test_resent_batch_is_idempotent(self, ledger):
        batch = _events(3)
        ledger.append("sess-1", "app-1", batch)
        again = ledger.append("sess-1", "app-1", batch)
        assert again.accepted == 0
        assert again.duplicates == 3
        assert again.event_count == 3
        assert len(ledger.events("sess-1")) == 3

    def test_partial_overlap(self, ledger):
        ledger.append("sess-1", "app-1", _events(3))
        result = ledger.append("sess-1", "app-1", _events(3, start=2))
        assert result.accepted == 2
        assert result.duplicates == 1
        assert result.event_count == 5

    def test_other_application_rejected(self, ledger):
        ledger.append("sess-1", "app-1", _events(1))
        with pytest.raises(InvalidPayload):
            ledger.append("sess-1", "app-2", _events(1, start=1))


class TestCap:
    def test_batch_over_cap_rejected_whole(self, ledger):
        ledger.append("sess-1", "app-1", _events(9))
        with pytest.raises(SessionCapExceeded):
            ledger.append("sess-1", "app-1", _events(2, start=9))
        assert ledger.get_session("sess-1").event_count == 9
        assert len(ledger.events("sess-1")) == 9

    def test_exactly_at_cap_accepted_and_capped(self, ledger):
        result = ledger.append("sess-1", "app-1", _events(10))
        assert result.event_count == 10
        assert result.state is SessionState.CAPPED
        with pytest.raises(SessionCapExceeded):
            ledger.append("sess-1", "app-1", _events(1, start=10))

    def test_duplicates_do_not_count_against_cap(self, ledger):
        batch = _events(10)
        ledger.append("sess-1", "app-1", batch)
        assert ledger.append("sess-1", "app-1", batch).accepted == 0

    def test_default_sized_cap(self, store, clock):
        big = SessionLedger(store, retention_days=30, max_events_per_session=10000, time_func=clock)
        big.append("sess-1", "app-1", _events(9999))
        with pytest.raises(SessionCapExceeded):
            big.append("sess-1", "app-1", _events(2, start=9999))
        assert big.get_session("sess-1").event_count == 9999
        assert store.count_events("sess-1") == 9999

    def test_concurrent_appends_respect_cap(self, ledger):
        outcomes = []
        lock = threading.Lock()

        def worker(n):
            try:
                ledger.append("sess-1", "app-1", _events(3, start=n * 3))
                result = "ok"
            except SessionCapExceeded:
                result = "capped"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 3
        assert outcomes.count("capped") == 5
        assert ledger.get_session("sess-1").event_count == 9
        seqs = [e["sequence"] for e in ledger.events("sess-1")]
        assert seqs == list(range(1, 10))

    def test_session_locks_stay_bounded(self, store, clock):
        """Rejected first batches for hundreds of new ids leave no per-id
        lock behind; every id maps onto the fixed stripe set."""
        tiny = SessionLedger(store, retention_days=30, max_events_per_session=1, time_func=clock)
        locks = set()
        for n in range(300):
            session_id = f"flood-{n}"
            with pytest.raises(SessionCapExceeded):
                tiny.append(session_id, "app-1", _events(2, session_id=session_id))
            locks.add(id(tiny.session_lock(session_id)))

        assert store.count_sessions() == 0
        assert len(locks) <= LOCK_STRIPES
        assert tiny.session_lock("flood-7") is tiny.session_lock("flood-7")


class TestExpiry:
    def test_append_after_expiry_rejected(self, ledger, clock):
        ledger.append("sess-1", "app-1", _events(1))
        clock.advance(30 * SECONDS_PER_DAY)
        with pytest.raises(SessionExpired):
            ledger.append("sess-1", "app-1", _events(1, start=1))
        assert ledger.session_state("sess-1") is SessionState.EXPIRED

    def test_purge_then_append_stays_expired(self, ledger, clock):
        ledger.append("sess-1", "app-1", _events(4))
        clock.advance(31 * SECONDS_PER_DAY)
        assert ledger.purge("sess-1") == 4
        assert ledger.get_session("sess-1") is None
        assert ledger.session_state("sess-1") is SessionState.EXPIRED
        with pytest.raises(SessionExpired):
            ledger.append("sess-1", "app-1", _events(1, start=10))

    def test_purge_skips_live_session(self, ledger):
        ledger.append("sess-1", "app-1", _events(1))
        assert ledger.purge("sess-1") is None
        assert ledger.get_session("sess-1") is not None

    def test_unknown_session_has_no_state(self, ledger):
        assert ledger.session_state("nope") is None


class TestStorageFailure:
    def test_failed_write_rolls_back_and_retry_succeeds(self, ledger, store, monkeypatch):
        original = store.insert_events
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("disk I/O error")
            return original(*args, **kwargs)

        monkeypatch.setattr(store, "insert_events", flaky)
        batch = _events(3)
        with pytest.raises(StorageFailure):
            ledger.append("sess-1", "app-1", batch)
        assert ledger.get_session("sess-1") is None

        result = ledger.append("sess-1", "app-1", batch)
        assert result.accepted == 3
        assert result.event_count == 3
