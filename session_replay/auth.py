"""
Bearer-token authentication for recording clients using JWT.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import jwt

from session_replay.errors import Unauthorized

logger = logging.getLogger(__name__)


class TokenAuthenticator:
    """Issues and verifies HS256 tokens whose subject is an application id."""

    algorithm = "HS256"

    def __init__(self, secret_key: str, expiration_hours: int = 24, time_func=None):
        if not secret_key:
            raise ValueError("JWT secret must not be empty")
        self.__secret_key = secret_key
        self.ttl = timedelta(hours=expiration_hours)
        self._time_func = time_func or (lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"<TokenAuthenticator algorithm={self.algorithm}>"

    def issue(self, application_id: str) -> str:
        """Create a token for *application_id*."""
        now = self._time_func()
        payload = {
            "sub": application_id,
            "type": "ingest",
            "iat": now,
            "exp": now + self.ttl,
        }
        return jwt.encode(payload, self.__secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> str:
        """Return the application id carried by *token*.

        Raises Unauthorized if the token is invalid, expired or not an
        ingest token.
        """
        try:
            payload = jwt.decode(
                token,
                self.__secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Token expired")
            raise Unauthorized("token expired")
        except jwt.InvalidTokenError as exc:
            logger.debug("Invalid token detail: %s", exc)
            raise Unauthorized("invalid token")

        if payload.get("type") != "ingest":
            raise Unauthorized("wrong token type")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise Unauthorized("token has no application id")
        return subject

    def authenticate(self, authorization: str | None) -> str:
        """Verify an ``Authorization`` header value and return the application id."""
        if not authorization:
            raise Unauthorized("missing bearer token")
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthorized("malformed authorization header")
        return self.verify(token.strip())
