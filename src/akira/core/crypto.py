"""
Signing and encoding helpers shared by the vault, the audit ledger and the
session token service.

Audit entries and export bundles are signed over a canonical JSON rendering:
sorted keys at every level, compact separators, ASCII only. Two dicts with
the same content therefore always produce the same MAC, whatever order their
keys were inserted in.
"""

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime
from enum import Enum
from typing import Any


def _canonical_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"{type(obj).__name__} has no canonical JSON form")


def canonicalize_json(obj: Any) -> str:
    """Deterministic JSON text used as the MAC input."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=_canonical_default)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hmac_sign(obj: Any, key: bytes) -> str:
    """Hex HMAC-SHA256 of canonicalize_json(obj) under key."""
    return hmac.new(key, canonicalize_json(obj).encode("utf-8"), hashlib.sha256).hexdigest()


def hmac_verify(obj: Any, signature: str, key: bytes) -> bool:
    """
    Recompute the MAC for obj and compare it with signature.

    A non-string signature (a corrupted row, a missing column) is simply a
    failed verification.
    """
    if not isinstance(signature, str):
        return False
    return constant_time_compare(hmac_sign(obj, key).encode(), signature.encode())


def constant_time_compare(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


def generate_random_id(prefix: str = "", nbytes: int = 16) -> str:
    """Random hex identifier such as ``key_3f9a...``; nbytes of entropy."""
    token = secrets.token_hex(nbytes)
    return f"{prefix}_{token}" if prefix else token


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 with the trailing '=' stripped (JWT and secret encoding)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
