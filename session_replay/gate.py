"""Ingest gate: authenticate, rate-limit and validate, in that order."""

import json
import logging
from dataclasses import dataclass

from session_replay.auth import TokenAuthenticator
from session_replay.errors import IngestError, InvalidPayload, RateLimited
from session_replay.ledger import AppendResult, SessionLedger
from session_replay.metrics import IngestMetrics
from session_replay.models import Event
from session_replay.rate_limiter import RateDecision, RateLimiter
from session_replay.validator import BatchValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    application_id: str
    session_id: str
    events: list[Event]


class IngestGate:
    """Turns an ingest request into a validated Batch or a rejection.

    Authentication and rate limiting run before the body is even decoded,
    so rejected traffic costs as little as possible.
    """

    def __init__(self, authenticator: TokenAuthenticator, rate_limiter: RateLimiter,
                 validator: BatchValidator, ledger: SessionLedger,
                 metrics: IngestMetrics | None = None):
        self._auth = authenticator
        self._rate_limiter = rate_limiter
        self._validator = validator
        self._ledger = ledger
        self._metrics = metrics or IngestMetrics()

    @property
    def metrics(self) -> IngestMetrics:
        return self._metrics

    def accept(self, authorization: str | None, body, on_rate_decision=None) -> Batch:
        """Check a request; return its Batch or raise an IngestError.

        *body* may be raw bytes/str, a callable returning them, or an
        already decoded object.
        *on_rate_decision* receives the RateDecision once the client is known.
        """
        application_id = self._auth.authenticate(authorization)

        decision: RateDecision = self._rate_limiter.hit(application_id)
        if on_rate_decision is not None:
            on_rate_decision(decision)
        if not decision.allowed:
            raise RateLimited(
                f"rate limit of {decision.limit} requests exceeded",
                retry_after=decision.retry_after,
            )

        payload = self._decode(body)
        events = self._validator.parse(payload)

        claimed = payload.get("applicationId")
        if claimed is not None and claimed != application_id:
            raise InvalidPayload("applicationId does not match credentials")

        return Batch(
            application_id=application_id,
            session_id=payload["sessionId"],
            events=events,
        )

    def ingest(self, authorization: str | None, body, on_rate_decision=None) -> AppendResult:
        """Accept a request and append its batch to the session ledger."""
        try:
            batch = self.accept(authorization, body, on_rate_decision)
            result = self._ledger.append(batch.session_id, batch.application_id, batch.events)
        except IngestError as exc:
            self._metrics.record_rejected(exc.kind)
            logger.info("Rejected batch: %s (%s)", exc.kind, exc.message)
            raise
        self._metrics.record_accepted(result.accepted, result.duplicates)
        return result

    @staticmethod
    def _decode(body):
        if callable(body):
            # read lazily so rejected requests never pay for the body
            body = body()
        if isinstance(body, (bytes, bytearray, str)):
            try:
                return json.loads(body, parse_constant=_reject_constant)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise InvalidPayload(f"invalid JSON: {exc}") from exc
        if body is None:
            raise InvalidPayload("empty request body")
        return body


def _reject_constant(name):
    raise InvalidPayload(f"invalid JSON: {name} is not a number")
