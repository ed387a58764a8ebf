"""Admin session tokens.

Compact HS256 JWTs with a fixed claim set (``sub``, ``iat``, ``exp``, ``jti``).
Signing and verification are kept free of HTTP and storage concerns; the
caller supplies the secret.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

SESSION_TTL_SECONDS = 24 * 60 * 60
SESSION_SUBJECT = "admin"

_HEADER = {"alg": "HS256", "typ": "JWT"}


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _json_segment(obj: dict[str, Any]) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def new_session_secret() -> str:
    """Generate a fresh HMAC key for signing sessions."""
    return uuid.uuid4().hex + uuid.uuid4().hex


@dataclass
class SessionCheck:
    valid: bool
    reason: str = ""
    payload: Optional[dict[str, Any]] = None


class SessionSigner:
    """Issue and verify HS256 session tokens for a single secret."""

    def __init__(self, secret: str, ttl_seconds: int = SESSION_TTL_SECONDS) -> None:
        if not secret:
            raise ValueError("session secret must not be empty")
        self._key = secret.encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return b64url_encode(digest)

    def issue(self, subject: str = SESSION_SUBJECT, now: Optional[int] = None) -> str:
        iat = int(time.time()) if now is None else int(now)
        payload = {
            "sub": subject,
            "iat": iat,
            "exp": iat + self._ttl,
            "jti": str(uuid.uuid4()),
        }
        signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, now: Optional[int] = None) -> SessionCheck:
        parts = (token or "").split(".")
        if len(parts) != 3:
            return SessionCheck(False, "invalid_token")
        encoded_header, encoded_payload, signature = parts
        try:
            header = json.loads(b64url_decode(encoded_header))
            payload = json.loads(b64url_decode(encoded_payload))
        except (ValueError, TypeError):
            return SessionCheck(False, "invalid_token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return SessionCheck(False, "invalid_token")
        if not isinstance(payload, dict):
            return SessionCheck(False, "invalid_token")

        current = int(time.time()) if now is None else int(now)
        exp = payload.get("exp")
        if isinstance(exp, (int, float)) and exp < current:
            return SessionCheck(False, "token_expired")

        expected = self._sign(f"{encoded_header}.{encoded_payload}")
        if not hmac.compare_digest(expected, signature):
            return SessionCheck(False, "invalid_signature")
        return SessionCheck(True, payload=payload)
