"""
SQLite-backed storage for recording sessions and their events.

Layout:
    sessions          one row per session id, with its expiry and event count
    events            keyed by (session_id, seq); event id unique per session
    expired_sessions  tombstones for reaped sessions so they cannot come back

One connection is shared by every thread and guarded by a re-entrant lock,
so the number of open handles stays fixed however many request threads the
server starts. SQLite serialises writes anyway.

Usage:
    store = EventStore("./data/session_replay.db")
    with store.transaction() as conn:
        store.insert_session(conn, record)
    store.close()
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from session_replay.models import Event, event_to_dict

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    session_id: str
    application_id: str
    created_at: float
    expires_at: float
    event_count: int = 0


class EventStore:
    """Store sessions and ordered event rows in SQLite."""

    def __init__(self, db_path: str = "./data/session_replay.db", busy_timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")  # readers never block the writer
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._closed = False
        self._create_tables()
        logger.info("SQLite storage initialized: %s", self.db_path)

    # ------------------------------------------------------------------
    # Connection and transactions
    # ------------------------------------------------------------------

    def connection(self) -> sqlite3.Connection:
        """The shared connection. Hold ``reading()`` or ``transaction()`` while using it."""
        if self._closed:
            raise sqlite3.ProgrammingError("EventStore is closed")
        return self._conn

    @contextmanager
    def reading(self):
        """Use the connection for reads without interleaving another thread's transaction."""
        with self._lock:
            yield self.connection()

    @contextmanager
    def transaction(self):
        """Run the block in one write transaction; roll back on any error."""
        with self._lock:
            conn = self.connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _create_tables(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.connection().executescript("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                application_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                event_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS events (
                session_id TEXT NOT NULL
                    REFERENCES sessions(session_id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                event_id TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                type TEXT NOT NULL,
                body TEXT NOT NULL,
                received_at REAL NOT NULL,
                PRIMARY KEY (session_id, seq),
                UNIQUE (session_id, event_id)
            );

            CREATE TABLE IF NOT EXISTS expired_sessions (
                session_id TEXT PRIMARY KEY,
                expired_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_expires_at
                ON sessions(expires_at);

            CREATE INDEX IF NOT EXISTS idx_expired_sessions_expired_at
                ON expired_sessions(expired_at);
        """)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, conn: sqlite3.Connection, session_id: str) -> SessionRecord | None:
        row = conn.execute(
            "SELECT session_id, application_id, created_at, expires_at, event_count "
            "FROM sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return SessionRecord(**dict(row))

    def insert_session(self, conn: sqlite3.Connection, record: SessionRecord) -> None:
        conn.execute(
            "INSERT INTO sessions (session_id, application_id, created_at, expires_at, event_count) "
            "VALUES (?, ?, ?, ?, ?)",
            (record.session_id, record.application_id, record.created_at,
             record.expires_at, record.event_count),
        )

    def set_event_count(self, conn: sqlite3.Connection, session_id: str, count: int) -> None:
        conn.execute(
            "UPDATE sessions SET event_count = ? WHERE session_id = ?",
            (count, session_id),
        )

    def is_tombstoned(self, conn: sqlite3.Connection, session_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM expired_sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        return row is not None

    def expired_session_ids(self, now: float) -> list[str]:
        with self.reading() as conn:
            cursor = conn.execute(
                "SELECT session_id FROM sessions WHERE expires_at <= ? ORDER BY expires_at",
                (now,),
            )
            return [row["session_id"] for row in cursor.fetchall()]

    def delete_session(self, conn: sqlite3.Connection, session_id: str, expired_at: float) -> int:
        """Delete a session and its events, leaving a tombstone.

        Returns:
            Number of events deleted.
        """
        cursor = conn.execute("DELETE FROM events WHERE session_id = ?", (session_id,))
        deleted = cursor.rowcount
        conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        conn.execute(
            "INSERT OR REPLACE INTO expired_sessions (session_id, expired_at) VALUES (?, ?)",
            (session_id, expired_at),
        )
        return deleted

    def purge_tombstones(self, older_than: float) -> int:
        """Delete tombstones recorded before *older_than*."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM expired_sessions WHERE expired_at < ?", (older_than,)
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def existing_event_ids(self, conn: sqlite3.Connection, session_id: str, ids: list[str]) -> set[str]:
        if not ids:
            return set()
        found: set[str] = set()
        # stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" * len(chunk))
            cursor = conn.execute(
                f"SELECT event_id FROM events WHERE session_id = ? AND event_id IN ({placeholders})",
                [session_id, *chunk],
            )
            found.update(row["event_id"] for row in cursor.fetchall())
        return found

    def insert_events(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        first_seq: int,
        events: list[Event],
        received_at: float,
    ) -> None:
        conn.executemany(
            "INSERT INTO events (session_id, seq, event_id, timestamp, type, body, received_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    session_id,
                    first_seq + i,
                    event.id,
                    event.timestamp,
                    event.type.value,
                    json.dumps(event_to_dict(event)),
                    received_at,
                )
                for i, event in enumerate(events)
            ],
        )

    def list_events(self, session_id: str, after_seq: int = 0, limit: int | None = None) -> list[dict]:
        """Return stored events of a session in sequence order."""
        sql = (
            "SELECT seq, body FROM events WHERE session_id = ? AND seq > ? ORDER BY seq"
        )
        params: list = [session_id, after_seq]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.reading() as conn:
            rows = conn.execute(sql, params).fetchall()
        result = []
        for row in rows:
            entry = json.loads(row["body"])
            entry["sequence"] = row["seq"]
            result.append(entry)
        return result

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------

    def count_sessions(self) -> int:
        with self.reading() as conn:
            return conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]

    def count_events(self, session_id: str | None = None) -> int:
        with self.reading() as conn:
            if session_id is None:
                return conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM events WHERE session_id = ?", (session_id,)
            ).fetchone()[0]

    def close(self) -> None:
        """Close the shared connection. Later use raises ProgrammingError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
