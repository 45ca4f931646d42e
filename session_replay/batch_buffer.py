"""Batch buffer — collects admitted events and flushes on size or time threshold."""

import logging
import threading
import time

from session_replay.models import Event

logger = logging.getLogger(__name__)


class BatchBuffer:
    """Thread-safe buffer that hands off a batch when either the batch size
    threshold is reached or the flush interval elapses since the last flush.

    Clearing the buffer and handing the batch to ``on_flush`` happen under
    one lock, so batches are handed off in flush order and no event is lost
    or duplicated between the two steps. ``on_flush`` must therefore return
    quickly; the recorder only enqueues the batch for its sender thread.
    """

    def __init__(self, batch_size: int, flush_interval: float, on_flush, time_func=None):
        self._batch_size = batch_size
        self._flush_interval = flush_interval  # seconds
        self._on_flush = on_flush
        self._time_func = time_func or time.monotonic

        self._buffer: list[Event] = []
        self._cond = threading.Condition()
        self._last_flush = self._time_func()
        self._running = False
        self._closed = False
        self._timer_thread: threading.Thread | None = None

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def flush_interval(self) -> float:
        return self._flush_interval

    @property
    def pending_count(self) -> int:
        """Number of events currently waiting in the buffer."""
        with self._cond:
            return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._running

    # Lifecycle

    def start(self):
        """Start the background flush timer."""
        with self._cond:
            if self._running:
                return
            self._running = True
            self._last_flush = self._time_func()
        self._timer_thread = threading.Thread(
            target=self._flush_timer, name="batch-buffer-timer", daemon=True
        )
        self._timer_thread.start()

    def stop(self):
        """Stop the timer thread, wait for it, and flush any remaining events.

        The buffer refuses further events from this point on.
        """
        with self._cond:
            self._running = False
            self._closed = True
            self._cond.notify_all()
        if self._timer_thread is not None:
            self._timer_thread.join(timeout=5)
            self._timer_thread = None
        self.flush("shutdown")

    # Public API

    def add(self, event: Event) -> bool:
        """Append an event. Flushes immediately if the batch-size threshold is reached.

        Returns False, keeping nothing, once the buffer has been stopped.
        """
        with self._cond:
            if self._closed:
                logger.debug("Buffer stopped, refusing event %s", event.id)
                return False
            self._buffer.append(event)
            if len(self._buffer) >= self._batch_size:
                self._flush_locked("size")
            return True

    def flush(self, trigger: str = "manual") -> int:
        """Hand off whatever is buffered now. Returns the number of events flushed."""
        with self._cond:
            return self._flush_locked(trigger)

    # Internal helpers

    def _flush_locked(self, trigger: str) -> int:
        self._last_flush = self._time_func()
        # wake the timer so it re-arms from the new deadline
        self._cond.notify_all()
        if not self._buffer:
            return 0

        # stable sort: equal timestamps keep capture order
        batch = sorted(self._buffer, key=lambda e: e.timestamp)
        self._buffer = []
        self._safe_flush(batch, trigger)
        return len(batch)

    def _flush_timer(self):
        """Background thread that flushes the buffer once the interval since
        the last flush has elapsed."""
        with self._cond:
            while self._running:
                remaining = self._last_flush + self._flush_interval - self._time_func()
                if remaining > 0:
                    self._cond.wait(timeout=remaining)
                    continue
                self._flush_locked("timer")

    def _safe_flush(self, batch: list[Event], trigger: str):
        """Invoke the on_flush callback with error handling so that a
        failing callback never crashes the buffer internals."""
        try:
            self._on_flush(batch, trigger)
            logger.debug("Flushed batch of %d events (%s)", len(batch), trigger)
        except Exception:
            logger.exception(
                "on_flush callback failed for batch of %d events", len(batch)
            )
