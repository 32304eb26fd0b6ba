"""Identity verification for signed credential tokens.

Tokens are three base64url segments, ``header.payload.signature``, where the
signature is HMAC-SHA256 over ``header.payload`` keyed by the process-wide
secret, base64url encoded with padding stripped. The payload carries
``email``, an optional ``sessionId``, ``iat`` and ``exp`` (epoch seconds).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from livebridge.config import Config
from livebridge.errors import AuthenticationError

ANONYMOUS = "anonymous"

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _b64url_encode(digest)


def identity_from_claims(claims: dict[str, Any]) -> str:
    """``email`` alone, or ``email:sessionId`` for session-scoped tokens."""
    email = claims["email"]
    session_id = claims.get("sessionId")
    return f"{email}:{session_id}" if session_id else email


def sign_token(
    email: str,
    *,
    session_id: str | None = None,
    secret: str | None = None,
    ttl: int | None = None,
    now: float | None = None,
) -> str:
    """Issue a token. Used by tooling and tests; issuance is otherwise external."""
    issued = int(now if now is not None else time.time())
    claims: dict[str, Any] = {"email": email, "iat": issued, "exp": issued + (ttl or Config.TOKEN_TTL)}
    if session_id:
        claims["sessionId"] = session_id
    header = _b64url_encode(json.dumps(_HEADER, separators=(",", ":")).encode())
    body = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode())
    signing_input = f"{header}.{body}"
    return f"{signing_input}.{_sign(signing_input, secret or Config.AUTH_SECRET)}"


class TokenVerifier:
    """Validates tokens against one secret. Pure: no I/O, no retries."""

    def __init__(self, secret: str | None = None, clock=time.time):
        self._secret = secret or Config.AUTH_SECRET
        self._clock = clock

    def claims(self, token: str) -> dict[str, Any]:
        """Return the verified payload or raise AuthenticationError."""
        if not token or not isinstance(token, str):
            raise AuthenticationError("Missing token")
        parts = token.split(".")
        if len(parts) != 3:
            raise AuthenticationError("Malformed token")
        header, body, signature = parts
        expected = _sign(f"{header}.{body}", self._secret)
        if not hmac.compare_digest(expected, signature):
            raise AuthenticationError("Invalid token signature")
        try:
            claims = json.loads(_b64url_decode(body))
        except (ValueError, UnicodeDecodeError) as exc:
            raise AuthenticationError("Malformed token payload") from exc
        if not isinstance(claims, dict) or not claims.get("email"):
            raise AuthenticationError("Token has no identity")
        exp = claims.get("exp")
        if exp is not None:
            try:
                exp = float(exp)
            except (TypeError, ValueError) as exc:
                raise AuthenticationError("Malformed token payload") from exc
        if exp is not None and self._clock() > exp:
            raise AuthenticationError("Token expired", code="AUTH_EXPIRED")
        return claims

    def require(self, token: str) -> str:
        """Return the identity for a token or raise AuthenticationError."""
        return identity_from_claims(self.claims(token))

    def verify(self, token: str | None) -> str | None:
        """Return the identity for a token, or None when it is invalid."""
        try:
            return self.require(token or "")
        except AuthenticationError:
            return None

    def identify(self, token: str | None) -> str:
        """Like verify(), but invalid or missing tokens mean anonymous."""
        return self.verify(token) or ANONYMOUS
