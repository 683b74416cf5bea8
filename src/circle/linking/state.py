"""Signed OAuth state tokens.

A token is base64url("session_ref|nonce|expires_at|signature") where the
signature is hex HMAC-SHA256 over the first three fields. The session ref is
the checkout session id that started the flow, so the callback can recover
it without server-side storage.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Optional

SEPARATOR = "|"
NONCE_BYTES = 16


class InvalidStateError(ValueError):
    """State token failed parsing, verification or expiry checks."""


@dataclass(frozen=True)
class ParsedState:
    session_ref: str
    nonce: str
    expires_at: int


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(token: str) -> bytes:
    padding = "=" * (-len(token) % 4)
    raw = base64.b64decode(token + padding, altchars=b"-_", validate=True)
    # The decoder ignores the unused low bits of the final character.
    if _b64url_encode(raw) != token:
        raise ValueError("state is not canonical base64url")
    return raw


class StateSigner:
    """Mints and verifies state tokens with a shared secret."""

    def __init__(self, secret: str, ttl_seconds: int = 600):
        self.secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _sign(self, payload: str) -> str:
        return hmac.new(self.secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def mint(self, session_ref: str, now: Optional[float] = None) -> str:
        if not self.secret:
            raise RuntimeError("oauth_state_secret not configured")
        if SEPARATOR in session_ref:
            raise ValueError("session_ref must not contain '|'")

        issued = int(now if now is not None else time.time())
        nonce = secrets.token_hex(NONCE_BYTES)
        payload = SEPARATOR.join([session_ref, nonce, str(issued + self.ttl_seconds)])
        return _b64url_encode(f"{payload}{SEPARATOR}{self._sign(payload)}".encode("utf-8"))

    def parse(self, token: str, now: Optional[float] = None) -> ParsedState:
        """Verify a token and return its fields.

        Raises:
            InvalidStateError: On any malformed, tampered or expired token
        """
        if not self.secret:
            raise RuntimeError("oauth_state_secret not configured")
        try:
            decoded = _b64url_decode(token).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise InvalidStateError("state is not valid base64url") from e

        parts = decoded.split(SEPARATOR)
        if len(parts) != 4:
            raise InvalidStateError(f"state has {len(parts)} fields, expected 4")
        session_ref, nonce, expires_raw, signature = parts

        expected = self._sign(SEPARATOR.join([session_ref, nonce, expires_raw]))
        if not hmac.compare_digest(expected, signature):
            raise InvalidStateError("state signature mismatch")

        if not expires_raw.isdigit():
            raise InvalidStateError("state expiry is not a timestamp")
        expires_at = int(expires_raw)
        current = now if now is not None else time.time()
        if current >= expires_at:
            raise InvalidStateError("state expired")

        if not session_ref:
            raise InvalidStateError("state carries no session reference")

        return ParsedState(session_ref=session_ref, nonce=nonce, expires_at=expires_at)
