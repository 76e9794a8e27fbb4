"""
Session tokens.

HS256 JWTs bound to {identity_id, role}. Tokens are stateless: ending a session
is recorded in the audit ledger and the client discards the token; the server
keeps no session table.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from akira.core.clock import Clock, SystemClock
from akira.core.crypto import b64url_decode, b64url_encode, generate_random_id
from akira.core.policy import Role
from akira.errors import Denied, ValidationError


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session token."""
    identity_id: str
    role: Role
    token_id: str
    issued_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "role": self.role.value,
            "token_id": self.token_id,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class SessionTokenService:
    """Minimal HS256 JWT implementation."""

    ALGORITHM = "HS256"
    TOKEN_TYPE = "access"

    def __init__(self, secret_key: str, ttl_seconds: int = 3600, clock: Optional[Clock] = None):
        """
        Initialize the token service.

        Args:
            secret_key: Secret key for signing tokens
            ttl_seconds: Token lifetime
            clock: Time source for iat/exp
        """
        if not secret_key:
            raise ValueError("Session secret must not be empty")
        self._secret = secret_key.encode()
        self.ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()

    def __repr__(self) -> str:
        return f"SessionTokenService(ttl_seconds={self.ttl_seconds})"

    def _sign(self, message: str) -> bytes:
        return hmac.new(self._secret, message.encode(), hashlib.sha256).digest()

    def issue(self, identity_id: str, role: Role) -> Tuple[str, datetime]:
        """
        Issue a token for an identity.

        Returns:
            (token, expires_at)
        """
        now = self._clock.now()
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        payload = {
            "sub": identity_id,
            "role": role.value,
            "type": self.TOKEN_TYPE,
            "jti": generate_random_id(nbytes=12),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

        header_b64 = b64url_encode(json.dumps({"alg": self.ALGORITHM, "typ": "JWT"}).encode())
        payload_b64 = b64url_encode(json.dumps(payload, sort_keys=True).encode())
        message = f"{header_b64}.{payload_b64}"
        token = f"{message}.{b64url_encode(self._sign(message))}"
        return token, datetime.fromtimestamp(payload["exp"], tz=timezone.utc)

    def verify(self, token: str) -> SessionClaims:
        """
        Decode and verify a token.

        Raises:
            Denied: if the token is malformed, forged, expired or of the wrong type
        """
        payload = self._decode(token)
        if payload is None:
            raise Denied("Invalid or expired session")
        try:
            return SessionClaims(
                identity_id=payload["sub"],
                role=Role.parse(payload["role"]),
                token_id=payload["jti"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError, ValidationError):
            raise Denied("Invalid or expired session")

    def _decode(self, token: str) -> Optional[Dict[str, Any]]:
        if not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None

        header_b64, payload_b64, signature_b64 = parts
        try:
            header = json.loads(b64url_decode(header_b64))
            actual_sig = b64url_decode(signature_b64)
            payload = json.loads(b64url_decode(payload_b64))
        except (ValueError, TypeError):
            return None

        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), actual_sig):
            return None
        if not isinstance(payload, dict) or payload.get("type") != self.TOKEN_TYPE:
            return None

        exp = payload.get("exp")
        if not isinstance(exp, int):
            return None
        if self._clock.now() >= datetime.fromtimestamp(exp, tz=timezone.utc):
            return None
        return payload
