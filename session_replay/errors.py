"""Rejection kinds shared by the ingestion server and the recorder client."""

from __future__ import annotations


class ConfigError(ValueError):
    """Raised when configuration is missing or out of range."""


class IngestError(Exception):
    """Base class for every reason an event batch can be rejected.

    ``kind`` is the name sent over the wire, ``status_code`` the HTTP status
    the server answers with and ``retryable`` whether resending the identical
    batch may succeed.
    """

    kind = "IngestError"
    status_code = 500
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"status": "rejected", "error": self.kind, "message": self.message}


class Unauthorized(IngestError):
    kind = "Unauthorized"
    status_code = 401


class RateLimited(IngestError):
    kind = "RateLimited"
    status_code = 429

    def __init__(self, message: str = "", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["retryAfter"] = int(round(self.retry_after))
        return result


class InvalidPayload(IngestError):
    kind = "InvalidPayload"
    status_code = 400

    def __init__(self, message: str = "", errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> dict:
        result = super().to_dict()
        if self.errors:
            result["errors"] = self.errors
        return result


class SessionCapExceeded(IngestError):
    kind = "SessionCapExceeded"
    status_code = 409


class SessionExpired(IngestError):
    kind = "SessionExpired"
    status_code = 410


class StorageFailure(IngestError):
    kind = "StorageFailure"
    status_code = 503
    retryable = True


class NetworkFailure(IngestError):
    """Client-side transport error; never produced by the server."""
    kind = "NetworkFailure"
    status_code = 0
    retryable = True


ERROR_KINDS: dict[str, type[IngestError]] = {
    cls.kind: cls
    for cls in (
        Unauthorized,
        RateLimited,
        InvalidPayload,
        SessionCapExceeded,
        SessionExpired,
        StorageFailure,
        NetworkFailure,
    )
}
