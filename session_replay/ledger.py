"""Per-session caps, ordering, deduplication and expiry."""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum

from session_replay.errors import (
    InvalidPayload,
    SessionCapExceeded,
    SessionExpired,
    StorageFailure,
)
from session_replay.models import Event
from session_replay.storage import EventStore, SessionRecord

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
LOCK_STRIPES = 64


class SessionState(Enum):
    ACTIVE = "active"
    CAPPED = "capped"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    application_id: str
    created_at: float
    expires_at: float
    event_count: int
    state: SessionState

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "applicationId": self.application_id,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "eventCount": self.event_count,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class AppendResult:
    session_id: str
    accepted: int
    duplicates: int
    first_sequence: int | None
    last_sequence: int | None
    event_count: int
    state: SessionState

    def to_dict(self) -> dict:
        return {
            "status": "accepted",
            "sessionId": self.session_id,
            "accepted": self.accepted,
            "duplicates": self.duplicates,
            "firstSequence": self.first_sequence,
            "lastSequence": self.last_sequence,
            "eventCount": self.event_count,
            "state": self.state.value,
        }


class SessionLedger:
    """Admits event batches into sessions.

    Every append and every purge of a session runs under that session's lock
    and inside one storage transaction, so the cap check and the write are a
    single step and a session being reaped cannot be written to.
    """

    def __init__(self, store: EventStore, retention_days: int,
                 max_events_per_session: int, time_func=None):
        self._store = store
        self._retention_seconds = retention_days * SECONDS_PER_DAY
        self._max_events = max_events_per_session
        self._time_func = time_func or time.time
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    @property
    def store(self) -> EventStore:
        return self._store

    @property
    def max_events_per_session(self) -> int:
        return self._max_events

    @property
    def retention_seconds(self) -> float:
        return self._retention_seconds

    def now(self) -> float:
        return self._time_func()

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def session_lock(self, session_id: str) -> threading.Lock:
        """The lock guarding *session_id*; sessions share a fixed set of stripes."""
        return self._locks[hash(session_id) % len(self._locks)]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, session_id: str, application_id: str, events: list[Event]) -> AppendResult:
        """Durably append *events* to the session, all or nothing.

        Raises:
            SessionExpired: the session is past retention or already reaped.
            SessionCapExceeded: the new events would exceed the per-session cap.
            InvalidPayload: the session belongs to another application.
            StorageFailure: the write failed and was rolled back.
        """
        with self.session_lock(session_id):
            try:
                return self._append_locked(session_id, application_id, events)
            except sqlite3.Error as exc:
                logger.error("Storage failure appending to session %s: %s", session_id, exc)
                raise StorageFailure("event storage unavailable") from exc

    def _append_locked(self, session_id, application_id, events) -> AppendResult:
        now = self._time_func()
        with self._store.transaction() as conn:
            if self._store.is_tombstoned(conn, session_id):
                raise SessionExpired(f"session {session_id} has expired")

            record = self._store.get_session(conn, session_id)
            if record is None:
                record = SessionRecord(
                    session_id=session_id,
                    application_id=application_id,
                    created_at=now,
                    expires_at=now + self._retention_seconds,
                )
                self._store.insert_session(conn, record)
                logger.info("Created session %s for %s", session_id, application_id)
            elif record.application_id != application_id:
                raise InvalidPayload(f"session {session_id} belongs to another application")

            if record.expires_at <= now:
                raise SessionExpired(f"session {session_id} has expired")

            stored = self._store.existing_event_ids(conn, session_id, [e.id for e in events])
            new_events = [e for e in events if e.id not in stored]
            duplicates = len(events) - len(new_events)

            if record.event_count + len(new_events) > self._max_events:
                raise SessionCapExceeded(
                    f"session {session_id} holds {record.event_count} of "
                    f"{self._max_events} events; batch of {len(new_events)} rejected"
                )

            first_seq = last_seq = None
            count = record.event_count
            if new_events:
                first_seq = record.event_count + 1
                last_seq = record.event_count + len(new_events)
                self._store.insert_events(conn, session_id, first_seq, new_events, now)
                count = record.event_count + len(new_events)
                self._store.set_event_count(conn, session_id, count)

        if duplicates:
            logger.info("Ignored %d already stored events for session %s", duplicates, session_id)
        return AppendResult(
            session_id=session_id,
            accepted=len(new_events),
            duplicates=duplicates,
            first_sequence=first_seq,
            last_sequence=last_seq,
            event_count=count,
            state=self._state(count, record.expires_at, now),
        )

    def purge(self, session_id: str, now: float | None = None) -> int | None:
        """Delete an expired session and its events, leaving a tombstone.

        Returns the number of events deleted, or None if the session was not
        (or no longer) expired.
        """
        now = self._time_func() if now is None else now
        with self.session_lock(session_id):
            try:
                with self._store.transaction() as conn:
                    record = self._store.get_session(conn, session_id)
                    if record is None or record.expires_at > now:
                        return None
                    deleted = self._store.delete_session(conn, session_id, now)
            except sqlite3.Error as exc:
                raise StorageFailure(f"could not purge session {session_id}") from exc
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> SessionInfo | None:
        try:
            with self._store.reading() as conn:
                record = self._store.get_session(conn, session_id)
        except sqlite3.Error as exc:
            raise StorageFailure("event storage unavailable") from exc
        if record is None:
            return None
        return SessionInfo(
            session_id=record.session_id,
            application_id=record.application_id,
            created_at=record.created_at,
            expires_at=record.expires_at,
            event_count=record.event_count,
            state=self._state(record.event_count, record.expires_at, self._time_func()),
        )

    def session_state(self, session_id: str) -> SessionState | None:
        """State of a stored session; EXPIRED also covers reaped sessions."""
        info = self.get_session(session_id)
        if info is not None:
            return info.state
        try:
            with self._store.reading() as conn:
                if self._store.is_tombstoned(conn, session_id):
                    return SessionState.EXPIRED
        except sqlite3.Error as exc:
            raise StorageFailure("event storage unavailable") from exc
        return None

    def events(self, session_id: str, after_sequence: int = 0, limit: int | None = None) -> list[dict]:
        try:
            return self._store.list_events(session_id, after_sequence, limit)
        except sqlite3.Error as exc:
            raise StorageFailure("event storage unavailable") from exc

    def expired_session_ids(self, now: float | None = None) -> list[str]:
        now = self._time_func() if now is None else now
        try:
            return self._store.expired_session_ids(now)
        except sqlite3.Error as exc:
            raise StorageFailure("event storage unavailable") from exc

    def _state(self, count: int, expires_at: float, now: float) -> SessionState:
        if expires_at <= now:
            return SessionState.EXPIRED
        if count >= self._max_events:
            return SessionState.CAPPED
        return SessionState.ACTIVE
