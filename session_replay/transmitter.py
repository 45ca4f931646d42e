"""HTTP transmitter — delivers event batches with a bounded, cancellable retry loop."""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum

import requests

from session_replay.config import NetworkConfig
from session_replay.errors import ERROR_KINDS, NetworkFailure
from session_replay.models import Event, event_to_dict

logger = logging.getLogger(__name__)


class DeliveryOutcome(Enum):
    DELIVERED = "delivered"
    REJECTED = "rejected"      # terminal rejection, not retried
    EXHAUSTED = "exhausted"    # retryable failures until attempts ran out
    CANCELLED = "cancelled"    # shutdown interrupted the retry loop


@dataclass
class SendResult:
    outcome: DeliveryOutcome
    attempts: int
    error: str | None = None
    status_code: int | None = None
    message: str = ""
    retry_after: float | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is DeliveryOutcome.DELIVERED


@dataclass
class _Attempt:
    ok: bool
    retryable: bool
    error: str | None = None
    status_code: int | None = None
    message: str = ""
    retry_after: float | None = None


class Transmitter:
    """Sends a batch to the configured endpoint as one JSON request.

    A failed attempt is retried up to ``retry_attempts`` more times with a
    constant ``retry_delay`` between attempts. Only network errors and
    retryable server rejections (``StorageFailure``, other 5xx) are retried;
    every other rejection ends the loop at once.
    """

    def __init__(self, network: NetworkConfig, application_id: str, session=None):
        self._endpoint = network.endpoint
        self._application_id = application_id
        self._retry_attempts = network.retry_attempts
        self._retry_delay = network.retry_delay / 1000.0
        self._timeout = network.request_timeout / 1000.0
        self._cancel = threading.Event()
        self._owns_session = session is None
        self._session = session or requests.Session()
        headers = {"Content-Type": "application/json"}
        if network.auth_token:
            headers["Authorization"] = f"Bearer {network.auth_token}"
        self._headers = headers

    @property
    def retry_attempts(self) -> int:
        return self._retry_attempts

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self):
        """Stop pending retry waits and refuse further attempts."""
        self._cancel.set()

    def close(self):
        if self._owns_session:
            self._session.close()

    def build_body(self, batch: list[Event]) -> dict:
        return {
            "applicationId": self._application_id,
            "sessionId": batch[0].sessionId,
            "events": [event_to_dict(e) for e in batch],
        }

    def send(self, batch: list[Event], max_retries: int | None = None) -> SendResult:
        """Deliver *batch*. Never raises; the outcome says what happened."""
        if not batch:
            return SendResult(DeliveryOutcome.DELIVERED, attempts=0)

        retries = self._retry_attempts if max_retries is None else min(max_retries, self._retry_attempts)
        body = self.build_body(batch)
        start = time.monotonic()
        attempt: _Attempt | None = None
        attempts = 0

        for n in range(retries + 1):
            if self._cancel.is_set():
                return self._result(DeliveryOutcome.CANCELLED, attempts, attempt, start)

            attempts += 1
            attempt = self._attempt(body)
            if attempt.ok:
                return self._result(DeliveryOutcome.DELIVERED, attempts, attempt, start)
            if not attempt.retryable:
                logger.warning(
                    "Batch of %d events rejected: %s (%s)",
                    len(batch), attempt.error, attempt.message,
                )
                return self._result(DeliveryOutcome.REJECTED, attempts, attempt, start)

            if n < retries:
                logger.warning(
                    "Send failed (attempt %d/%d): %s %s",
                    attempts, retries + 1, attempt.error, attempt.message,
                )
                if self._cancel.wait(self._retry_delay):
                    return self._result(DeliveryOutcome.CANCELLED, attempts, attempt, start)

        logger.error(
            "Send failed after %d attempts: %s %s",
            attempts, attempt.error, attempt.message,
        )
        return self._result(DeliveryOutcome.EXHAUSTED, attempts, attempt, start)

    # Internal helpers

    def _attempt(self, body: dict) -> _Attempt:
        try:
            response = self._session.post(
                self._endpoint,
                json=body,
                headers=self._headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            return _Attempt(ok=False, retryable=True, error=NetworkFailure.kind, message=str(exc))

        status = response.status_code
        if 200 <= status < 300:
            return _Attempt(ok=True, retryable=False, status_code=status)

        payload = {}
        try:
            payload = response.json() or {}
        except ValueError:
            pass
        if not isinstance(payload, dict):
            payload = {}
        kind = payload.get("error")
        if not isinstance(kind, str):
            kind = None
        message = payload.get("message")
        if not isinstance(message, str):
            message = ""

        error_cls = ERROR_KINDS.get(kind)
        if error_cls is not None:
            retryable = error_cls.retryable
        else:
            # unknown failure: server-side trouble is worth retrying
            retryable = status >= 500
            kind = kind or f"HTTP{status}"

        retry_after = None
        header = response.headers.get("Retry-After") if response.headers else None
        if header is not None:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None

        return _Attempt(
            ok=False,
            retryable=retryable,
            error=kind,
            status_code=status,
            message=message or f"HTTP {status}",
            retry_after=retry_after,
        )

    @staticmethod
    def _result(outcome, attempts, attempt, start) -> SendResult:
        elapsed_ms = (time.monotonic() - start) * 1000
        if attempt is None:
            return SendResult(outcome, attempts=attempts, elapsed_ms=elapsed_ms)
        return SendResult(
            outcome=outcome,
            attempts=attempts,
            error=None if attempt.ok else attempt.error,
            status_code=attempt.status_code,
            message=attempt.message,
            retry_after=attempt.retry_after,
            elapsed_ms=elapsed_ms,
        )
