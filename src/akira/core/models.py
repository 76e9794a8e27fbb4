"""
Records owned by the identity store and the audit ledger.

These are plain dataclasses; the storage backends persist them and the
services in akira.core implement the rules around them.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from akira.core.policy import Role


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Identity:
    """A human operator."""
    id: str
    display_name: str
    email: str
    credential_hash: str
    role: Role
    created_at: datetime
    updated_at: datetime

    def summary(self) -> Dict[str, Any]:
        """Public view, without the credential hash."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at.isoformat(),
        }

    def to_dict(self, include_sensitive: bool = False) -> Dict[str, Any]:
        data = self.summary()
        data["updated_at"] = self.updated_at.isoformat()
        if include_sensitive:
            data["credential_hash"] = self.credential_hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            id=data["id"],
            display_name=data["display_name"],
            email=data["email"],
            credential_hash=data["credential_hash"],
            role=Role.parse(data["role"]),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data.get("updated_at") or data["created_at"]),
        )


@dataclass(frozen=True)
class PendingChallenge:
    """One-time code issued mid-login. At most one per email."""
    email: str
    challenge_id: str
    code: str
    expires_at: datetime
    created_at: datetime
    attempt_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def with_attempts(self, attempt_count: int) -> "PendingChallenge":
        return replace(self, attempt_count=attempt_count)


class ApiKeyScope(str, Enum):
    """Capability tags an API key can carry."""
    READ_DATA = "read:data"
    WRITE_DATA = "write:data"
    DELETE_DATA = "delete:data"


@dataclass
class ApiKey:
    """A stored machine credential. The plaintext secret is never part of it."""
    id: str
    owner_id: str
    name: str
    cipher_text: str
    iv: str
    fingerprint: str
    scopes: List[str]
    expires_at: datetime
    created_at: datetime
    is_active: bool = True
    rotated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)

    def status(self, now: datetime) -> str:
        if not self.is_active:
            return "Revoked"
        if self.is_expired(now):
            return "Expired"
        return "Active"

    def metadata(self, now: datetime) -> Dict[str, Any]:
        """Listing view: no ciphertext, no IV, no secret."""
        return {
            "id": self.id,
            "name": self.name,
            "fingerprint": self.fingerprint,
            "scopes": list(self.scopes),
            "status": self.status(now),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "rotated_at": _iso(self.rotated_at),
        }


class AccessRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class AccessRequest:
    """A self-service request for role elevation."""
    id: str
    identity_id: str
    requested_role: Role
    reason: str
    created_at: datetime
    status: AccessRequestStatus = AccessRequestStatus.PENDING
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "requested_role": self.requested_role.value,
            "reason": self.reason,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "processed_by": self.processed_by,
            "processed_at": _iso(self.processed_at),
        }


class AuditAction(str, Enum):
    """Tags for audit entries."""
    USER_REGISTERED = "USER_REGISTERED"
    LOGIN_FAILED = "LOGIN_FAILED"
    MFA_CHALLENGE_ISSUED = "MFA_CHALLENGE_ISSUED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    MFA_FAILED = "MFA_FAILED"
    MFA_LOCKOUT = "MFA_LOCKOUT"
    SESSION_ENDED = "SESSION_ENDED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    KEY_ISSUED = "KEY_ISSUED"
    KEY_ROTATED = "KEY_ROTATED"
    KEY_DELETED = "KEY_DELETED"
    API_ACCESS = "API_ACCESS"
    ACCESS_DENIED = "ACCESS_DENIED"
    LOGS_EXPORTED = "LOGS_EXPORTED"
    ROLE_CHANGED = "ROLE_CHANGED"
    IDENTITY_DELETED = "IDENTITY_DELETED"
    ACCESS_REQUEST_SUBMITTED = "ACCESS_REQUEST_SUBMITTED"
    ACCESS_REQUEST_APPROVED = "ACCESS_REQUEST_APPROVED"
    ACCESS_REQUEST_REJECTED = "ACCESS_REQUEST_REJECTED"
    MASTER_KEY_ROTATED = "MASTER_KEY_ROTATED"


@dataclass(frozen=True)
class AuditEntry:
    """
    A signed ledger entry.

    Frozen: the in-process object cannot be mutated either. The signature
    covers every field returned by signing_payload().
    """
    entry_id: str
    action: AuditAction
    actor_id: Optional[str]
    actor_display: str
    ip_address: Optional[str]
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    integrity_signature: str = ""

    def signing_payload(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "actor_display": self.actor_display,
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.signing_payload()
        data["integrity_signature"] = self.integrity_signature
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            entry_id=data["entry_id"],
            action=AuditAction(data["action"]),
            actor_id=data.get("actor_id"),
            actor_display=data["actor_display"],
            ip_address=data.get("ip_address"),
            timestamp=_dt(data["timestamp"]),
            details=dict(data.get("details") or {}),
            integrity_signature=data.get("integrity_signature", ""),
        )
