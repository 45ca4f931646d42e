"""Orchestrates sampler, batch buffer, transmitter and metrics for one recording session."""

import logging
import queue
import threading
import uuid

from session_replay.batch_buffer import BatchBuffer
from session_replay.config import RecordingConfig
from session_replay.metrics import RecorderMetrics
from session_replay.models import Event, RawEvent
from session_replay.sampler import SamplerFilter
from session_replay.transmitter import DeliveryOutcome, SendResult, Transmitter

logger = logging.getLogger(__name__)

_STOP = object()


class SessionRecorder:
    """One recording session in one page.

    Admitted events are buffered; each flushed batch goes into a bounded
    queue drained by a single sender thread, so batches reach the server in
    flush order while capture keeps buffering the next batch. A batch that
    cannot be delivered is logged, counted, passed to ``on_delivery_failure``
    and dropped; recording carries on.
    """

    def __init__(
        self,
        config: RecordingConfig,
        transmitter: Transmitter | None = None,
        session_id: str | None = None,
        on_delivery_failure=None,
        rng=None,
    ):
        self._config = config
        self._session_id = session_id or uuid.uuid4().hex
        self._metrics = RecorderMetrics()
        self._sampler = SamplerFilter(config, self._metrics, rng=rng)
        self._transmitter = transmitter or Transmitter(
            config.network_config, config.application_id
        )
        self._on_delivery_failure = on_delivery_failure

        network = config.network_config
        self._queue: queue.Queue = queue.Queue(maxsize=network.max_pending_batches)
        self._buffer = BatchBuffer(
            batch_size=network.batch_size,
            flush_interval=network.flush_interval / 1000.0,
            on_flush=self._handle_flush,
        )
        self._sender: threading.Thread | None = None
        self._draining = False
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False

        if config.debug:
            logging.getLogger("session_replay").setLevel(logging.DEBUG)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def metrics(self) -> RecorderMetrics:
        return self._metrics

    @property
    def pending_count(self) -> int:
        return self._buffer.pending_count

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the flush timer and the sender thread."""
        with self._lock:
            if self._started:
                return
            if self._stopped:
                raise RuntimeError("a stopped recorder cannot be restarted")
            self._started = True
        self._sender = threading.Thread(
            target=self._sender_loop, name="recorder-sender", daemon=True
        )
        self._sender.start()
        self._buffer.start()
        logger.info(
            "Recording session %s for %s (batch_size=%d, flush_interval=%dms)",
            self._session_id,
            self._config.application_id,
            self._config.network_config.batch_size,
            self._config.network_config.flush_interval,
        )

    def stop(self, timeout: float = 10.0):
        """Flush the buffer, give queued batches one retry each, then shut down.

        Anything still in flight when *timeout* runs out is cancelled.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            started = self._started

        self._draining = True
        self._buffer.stop()

        if started and self._sender is not None:
            try:
                self._queue.put(_STOP, timeout=timeout)
            except queue.Full:
                # cancelled sends return at once, so the queue empties
                self._transmitter.cancel()
                self._queue.put(_STOP)
            self._sender.join(timeout=timeout)
            if self._sender.is_alive():
                logger.warning("Sender still busy after %.1fs, cancelling retries", timeout)
                self._transmitter.cancel()
                self._sender.join(timeout=5)
        else:
            # never started: deliver inline with a single retry
            self._drain_inline()

        self._transmitter.close()
        logger.info("Recorder metrics: %s", self._metrics.snapshot())

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def record(self, raw: RawEvent) -> Event | None:
        """Filter and buffer one raw event. Returns the admitted event or None."""
        if self._stopped:
            logger.debug("Recorder stopped, ignoring event")
            return None
        self._metrics.record_captured()
        try:
            event = self._sampler.admit(raw, self._session_id)
        except (TypeError, ValueError) as exc:
            logger.warning("Discarding malformed %s event: %s", raw.type, exc)
            self._metrics.record_dropped("malformed")
            return None
        if event is None:
            return None
        if not self._buffer.add(event):
            # stop() closed the buffer after the check above
            self._metrics.record_dropped("stopped")
            return None
        return event

    def flush(self) -> int:
        """Hand the current buffer to the sender now."""
        return self._buffer.flush("manual")

    # ------------------------------------------------------------------
    # Flush callback (called by BatchBuffer under its lock)
    # ------------------------------------------------------------------

    def _handle_flush(self, batch: list[Event], trigger: str):
        self._metrics.record_flush(trigger)
        try:
            self._queue.put_nowait(batch)
        except queue.Full:
            self._metrics.record_overflow(len(batch))
            logger.error(
                "Send queue full (%d batches), dropping batch of %d events",
                self._queue.maxsize, len(batch),
            )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _sender_loop(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                self._drain_inline()
                return
            self._deliver(item, max_retries=1 if self._draining else None)

    def _drain_inline(self):
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is _STOP:
                continue
            self._deliver(item, max_retries=1)

    def _deliver(self, batch: list[Event], max_retries: int | None = None):
        try:
            result = self._transmitter.send(batch, max_retries=max_retries)
        except Exception:
            logger.exception("Transmitter failed for batch of %d events", len(batch))
            self._metrics.record_failure(len(batch), attempts=0)
            return

        if result.ok:
            self._metrics.record_delivery(len(batch), result.attempts, result.elapsed_ms)
            logger.debug(
                "Delivered batch of %d events in %d attempt(s)", len(batch), result.attempts
            )
            return

        self._metrics.record_failure(len(batch), result.attempts)
        if result.outcome is not DeliveryOutcome.CANCELLED:
            logger.warning(
                "Dropping batch of %d events after %d attempt(s): %s",
                len(batch), result.attempts, result.error,
            )
        self._report_failure(batch, result)

    def _report_failure(self, batch: list[Event], result: SendResult):
        if self._on_delivery_failure is None:
            return
        try:
            self._on_delivery_failure(batch, result)
        except Exception:
            logger.exception("on_delivery_failure callback failed")
