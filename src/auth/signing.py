"""
Signing and encryption of client-visible and at-rest bridge values.

- Authorization state: HS256 JWT carried through the identity provider's
  `state` parameter. Verified (signature and expiry) before any field is used.
- Approval cookie: base64 JSON list of approved client ids with an
  HMAC-SHA256 signature. Anything that fails verification reads as an empty set.
- Props: Fernet encryption of the upstream credentials held by the Token Store.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any

import jwt
from cryptography.fernet import Fernet, InvalidToken

from core.exceptions import InvalidStateError, TokenVerificationError

logger = logging.getLogger(__name__)

STATE_ALGORITHM = "HS256"
STATE_AUDIENCE = "mcp-oauth-bridge/callback"
APPROVAL_COOKIE_NAME = "mcp-approved-clients"


def hash_secret(value: str) -> str:
    """Stable lookup key for a bearer secret; the secret itself is never stored."""
    return hashlib.sha256(value.encode()).hexdigest()


class StateSigner:
    """Signs the authorization request carried across the upstream redirect."""

    def __init__(self, secret: str, ttl_seconds: int = 600) -> None:
        self._secret = secret
        self._ttl_seconds = ttl_seconds

    def encode(self, payload: dict[str, Any]) -> str:
        now = int(time.time())
        claims = {
            **payload,
            "aud": STATE_AUDIENCE,
            "iat": now,
            "exp": now + self._ttl_seconds,
        }
        return jwt.encode(claims, self._secret, algorithm=STATE_ALGORITHM)

    def decode(self, value: str | None) -> dict[str, Any]:
        """Verify and decode a state value.

        Raises:
            InvalidStateError: If the value is missing, forged, tampered or expired.
        """
        if not value:
            raise InvalidStateError("Missing state parameter")
        try:
            claims = jwt.decode(
                value,
                self._secret,
                algorithms=[STATE_ALGORITHM],
                audience=STATE_AUDIENCE,
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            logger.warning("Authorization state expired")
            raise InvalidStateError("Authorization state expired") from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"Authorization state rejected: {e}")
            raise InvalidStateError("Invalid state") from e

        for claim in ("aud", "iat", "exp"):
            claims.pop(claim, None)
        return claims


class ApprovalCookie:
    """Signed set of client ids the user has already approved in this browser."""

    def __init__(self, secret: str, name: str = APPROVAL_COOKIE_NAME) -> None:
        self._key = secret.encode()
        self.name = name

    def _sign(self, payload: str) -> str:
        signature = hmac.new(self._key, payload.encode(), hashlib.sha256).digest()
        return f"{payload}.{base64.urlsafe_b64encode(signature).decode()}"

    def encode(self, client_ids: set[str]) -> str:
        payload = json.dumps(sorted(client_ids), separators=(",", ":")).encode()
        return self._sign(base64.urlsafe_b64encode(payload).decode())

    def decode(self, raw: str | None) -> set[str]:
        """Return the approved client ids, or an empty set if absent or invalid."""
        if not raw or "." not in raw:
            return set()
        payload, signature_b64 = raw.rsplit(".", 1)
        try:
            provided = base64.urlsafe_b64decode(signature_b64.encode())
            expected = hmac.new(self._key, payload.encode(), hashlib.sha256).digest()
            if not hmac.compare_digest(expected, provided):
                logger.debug("Approval cookie signature mismatch; treating as empty")
                return set()
            value = json.loads(base64.urlsafe_b64decode(payload.encode()))
        except (ValueError, TypeError):
            logger.debug("Approval cookie undecodable; treating as empty")
            return set()
        if not isinstance(value, list):
            return set()
        return {str(item) for item in value}


class PropsCipher:
    """Encrypts props before they reach the Token Store."""

    def __init__(self, key: str) -> None:
        self._fernet = Fernet(key.encode())

    def encrypt(self, data: dict[str, Any]) -> str:
        return self._fernet.encrypt(json.dumps(data).encode()).decode()

    def decrypt(self, token: str) -> dict[str, Any]:
        try:
            return json.loads(self._fernet.decrypt(token.encode()))
        except InvalidToken as e:
            raise TokenVerificationError("Stored props failed integrity check") from e
