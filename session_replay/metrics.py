"""Thread-safe counters for the recorder and the ingest server."""

import threading
import time
from collections import defaultdict


def _percentile(data: list, pct: float) -> float:
    """Compute an interpolated percentile from a list of numeric values.

    Args:
        data: List of numeric values (will be sorted internally).
        pct: Desired percentile (0-100).

    Returns:
        Interpolated value at the given percentile, or 0.0 if data is empty.
    """
    if not data:
        return 0.0

    sorted_data = sorted(data)
    n = len(sorted_data)

    if n == 1:
        return float(sorted_data[0])

    idx = (pct / 100) * (n - 1)
    lower = int(idx)
    upper = lower + 1
    fraction = idx - lower

    if upper >= n:
        return float(sorted_data[-1])

    return float(sorted_data[lower] + fraction * (sorted_data[upper] - sorted_data[lower]))


class RecorderMetrics:
    """Collects metrics about capturing, batching and delivering events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events_captured = 0
        self._events_admitted = 0
        self._dropped: dict[str, int] = {"sampled": 0, "excluded": 0}
        self._events_masked = 0
        self._batches_sent = 0
        self._events_sent = 0
        self._batches_failed = 0
        self._events_failed = 0
        self._batches_overflowed = 0
        self._attempts = 0
        self._send_times: list[float] = []
        self._flush_triggers: dict[str, int] = {"size": 0, "timer": 0, "manual": 0, "shutdown": 0}
        self._start_time = time.monotonic()

    def record_captured(self) -> None:
        with self._lock:
            self._events_captured += 1

    def record_admitted(self, masked: bool = False) -> None:
        with self._lock:
            self._events_admitted += 1
            if masked:
                self._events_masked += 1

    def record_dropped(self, reason: str) -> None:
        with self._lock:
            self._dropped[reason] = self._dropped.get(reason, 0) + 1

    def record_flush(self, trigger: str) -> None:
        with self._lock:
            self._flush_triggers[trigger] = self._flush_triggers.get(trigger, 0) + 1

    def record_overflow(self, batch_size: int) -> None:
        """A flushed batch was discarded because the send queue was full."""
        with self._lock:
            self._batches_overflowed += 1
            self._events_failed += batch_size

    def record_delivery(self, batch_size: int, attempts: int, send_time_ms: float) -> None:
        with self._lock:
            self._batches_sent += 1
            self._events_sent += batch_size
            self._attempts += attempts
            self._send_times.append(send_time_ms)

    def record_failure(self, batch_size: int, attempts: int) -> None:
        with self._lock:
            self._batches_failed += 1
            self._events_failed += batch_size
            self._attempts += attempts

    def snapshot(self) -> dict:
        """Return a point-in-time snapshot of all collected metrics."""
        with self._lock:
            send_times = list(self._send_times)
            avg_send = sum(send_times) / len(send_times) if send_times else 0.0
            return {
                "events_captured": self._events_captured,
                "events_admitted": self._events_admitted,
                "events_masked": self._events_masked,
                "events_dropped": dict(self._dropped),
                "batches_sent": self._batches_sent,
                "events_sent": self._events_sent,
                "batches_failed": self._batches_failed,
                "batches_overflowed": self._batches_overflowed,
                "events_failed": self._events_failed,
                "send_attempts": self._attempts,
                "avg_send_time_ms": avg_send,
                "p95_send_time_ms": _percentile(send_times, 95),
                "flush_triggers": dict(self._flush_triggers),
                "uptime_seconds": time.monotonic() - self._start_time,
            }


class IngestMetrics:
    """Counts accepted batches and rejections by kind on the server."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches_accepted = 0
        self._events_accepted = 0
        self._duplicates_ignored = 0
        self._rejections: dict[str, int] = defaultdict(int)
        self._sessions_reaped = 0
        self._events_reaped = 0
        self._start_time = time.monotonic()

    def record_accepted(self, events: int, duplicates: int = 0) -> None:
        with self._lock:
            self._batches_accepted += 1
            self._events_accepted += events
            self._duplicates_ignored += duplicates

    def record_rejected(self, kind: str) -> None:
        with self._lock:
            self._rejections[kind] += 1

    def record_reaped(self, sessions: int, events: int) -> None:
        with self._lock:
            self._sessions_reaped += sessions
            self._events_reaped += events

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "batches_accepted": self._batches_accepted,
                "events_accepted": self._events_accepted,
                "duplicates_ignored": self._duplicates_ignored,
                "rejections": dict(self._rejections),
                "sessions_reaped": self._sessions_reaped,
                "events_reaped": self._events_reaped,
                "uptime_seconds": time.monotonic() - self._start_time,
            }
