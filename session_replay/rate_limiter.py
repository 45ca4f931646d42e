"""Per-client rate limiting using fixed-window counters."""

import threading
import time
from dataclasses import dataclass


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float  # seconds until the window resets


class FixedWindow:
    """Fixed-window counter for a single client."""

    def __init__(self, max_requests: int, window_seconds: float, time_func=None):
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._time_func = time_func or time.monotonic
        self._count = 0
        self._window_start = self._time_func()
        self._lock = threading.Lock()

    def hit(self) -> RateDecision:
        """Check and count one request as a single atomic step.

        A request is refused when the window's count is already at the
        maximum; refused requests are not counted.
        """
        with self._lock:
            now = self._time_func()
            if now - self._window_start >= self._window_seconds:
                self._window_start = now
                self._count = 0

            retry_after = max(0.0, self._window_start + self._window_seconds - now)
            if self._count >= self._max_requests:
                return RateDecision(False, self._max_requests, 0, retry_after)

            self._count += 1
            return RateDecision(
                True, self._max_requests, self._max_requests - self._count, retry_after
            )

    def expired(self, now: float) -> bool:
        with self._lock:
            return now - self._window_start >= self._window_seconds


class RateLimiter:
    """Manages per-client windows. The registry lock only guards window
    lookup; counting happens under each client's own lock."""

    def __init__(self, enabled: bool, max_requests: int, window_seconds: float,
                 time_func=None):
        self._enabled = enabled
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._time_func = time_func or time.monotonic
        self._windows: dict[str, FixedWindow] = {}
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def hit(self, client_id: str) -> RateDecision:
        """Count a request from *client_id* and report whether it is allowed."""
        if not self._enabled:
            return RateDecision(True, self._max_requests, self._max_requests,
                                float(self._window_seconds))

        with self._lock:
            window = self._windows.get(client_id)
            if window is None:
                window = FixedWindow(
                    self._max_requests, self._window_seconds, self._time_func
                )
                self._windows[client_id] = window
        return window.hit()

    def allow(self, client_id: str) -> bool:
        return self.hit(client_id).allowed

    def prune(self) -> int:
        """Forget clients whose window has ended. Returns how many were dropped."""
        now = self._time_func()
        with self._lock:
            stale = [cid for cid, w in self._windows.items() if w.expired(now)]
            for cid in stale:
                del self._windows[cid]
        return len(stale)
