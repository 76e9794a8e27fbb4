"""
Audit Ledger

Append-only, HMAC-signed record of every security-relevant event.

Each entry carries a typed details payload; the payload class fixes the action
tag, so an entry can never claim one action while describing another. The
signature is HMAC-SHA256 over the canonical JSON of every other field of the
entry, including its id and timestamp, so any edit to a stored row is
detectable with the signing key alone.

Features:
- Typed per-action detail payloads
- Constant-time signature verification
- Full-ledger integrity scans in batches
- Signed exports rendered as JSON, JSON Lines or CSV
"""

import csv
import io
import json
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from akira.core.clock import Clock, SystemClock
from akira.core.crypto import canonicalize_json, generate_random_id, hmac_sign, hmac_verify
from akira.core.models import AuditAction, AuditEntry
from akira.errors import DependencyUnavailable, ValidationError
from akira.monitoring.logging import get_logger
from akira.storage.base import AuditLogStorage, AuditQuery, StorageError

logger = get_logger(__name__)

SYSTEM_ACTOR = "System"


# ==================== Detail payloads ====================


@dataclass(frozen=True)
class AuditDetails:
    """Base class for per-action audit payloads."""

    ACTION: ClassVar[AuditAction]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UserRegistered(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.USER_REGISTERED
    email: str
    role: str


@dataclass(frozen=True)
class LoginFailed(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.LOGIN_FAILED
    email: str
    reason: str = "invalid_credentials"


@dataclass(frozen=True)
class MfaChallengeIssued(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.MFA_CHALLENGE_ISSUED
    email: str
    expires_at: str


@dataclass(frozen=True)
class LoginSuccess(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.LOGIN_SUCCESS
    email: str
    method: str = "password+otp"


@dataclass(frozen=True)
class MfaFailed(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.MFA_FAILED
    email: str
    attempts: int
    reason: str = "invalid_code"


@dataclass(frozen=True)
class MfaLockout(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.MFA_LOCKOUT
    email: str
    attempts: int


@dataclass(frozen=True)
class SessionEnded(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.SESSION_ENDED
    token_id: str


@dataclass(frozen=True)
class PasswordChanged(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.PASSWORD_CHANGED
    identity_id: str


@dataclass(frozen=True)
class KeyIssued(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.KEY_ISSUED
    key_id: str
    key_name: str
    scopes: List[str]


@dataclass(frozen=True)
class KeyRotated(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.KEY_ROTATED
    key_id: str
    key_name: str
    source: str = "local"


@dataclass(frozen=True)
class KeyDeleted(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.KEY_DELETED
    key_id: str
    key_name: str


@dataclass(frozen=True)
class ApiAccess(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.API_ACCESS
    key_id: str
    key_name: str
    scope: Optional[str] = None


@dataclass(frozen=True)
class AccessDenied(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.ACCESS_DENIED
    reason: str
    capability: Optional[str] = None
    resource: Optional[str] = None


@dataclass(frozen=True)
class LogsExported(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.LOGS_EXPORTED
    export_id: str
    entry_count: int


@dataclass(frozen=True)
class RoleChanged(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.ROLE_CHANGED
    target_id: str
    old_role: str
    new_role: str


@dataclass(frozen=True)
class IdentityDeleted(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.IDENTITY_DELETED
    target_id: str
    email: str
    keys_removed: int


@dataclass(frozen=True)
class AccessRequestSubmitted(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.ACCESS_REQUEST_SUBMITTED
    request_id: str
    requested_role: str


@dataclass(frozen=True)
class AccessRequestApproved(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.ACCESS_REQUEST_APPROVED
    request_id: str
    identity_id: str
    new_role: str


@dataclass(frozen=True)
class AccessRequestRejected(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.ACCESS_REQUEST_REJECTED
    request_id: str
    identity_id: str


@dataclass(frozen=True)
class MasterKeyRotated(AuditDetails):
    ACTION: ClassVar[AuditAction] = AuditAction.MASTER_KEY_ROTATED
    keys_reencrypted: int


DETAIL_TYPES: Dict[AuditAction, Type[AuditDetails]] = {
    cls.ACTION: cls
    for cls in (
        UserRegistered, LoginFailed, MfaChallengeIssued, LoginSuccess, MfaFailed,
        MfaLockout, SessionEnded, PasswordChanged, KeyIssued, KeyRotated, KeyDeleted,
        ApiAccess, AccessDenied, LogsExported, RoleChanged, IdentityDeleted,
        AccessRequestSubmitted, AccessRequestApproved, AccessRequestRejected,
        MasterKeyRotated,
    )
}


def parse_details(entry: AuditEntry) -> AuditDetails:
    """Rebuild the typed payload of a stored entry."""
    cls = DETAIL_TYPES[entry.action]
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in entry.details.items() if k in known})


# ==================== Results ====================


@dataclass
class LedgerVerification:
    """Outcome of a full-ledger integrity scan."""
    total: int = 0
    corrupted: List[str] = field(default_factory=list)

    @property
    def is_intact(self) -> bool:
        return not self.corrupted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "corrupted": list(self.corrupted),
            "is_intact": self.is_intact,
        }


class ExportFormat(Enum):
    """Supported export formats."""
    JSON = "json"
    JSON_LINES = "jsonl"
    CSV = "csv"


CSV_COLUMNS = [
    "entry_id", "timestamp", "action", "actor_id", "actor_display",
    "ip_address", "details", "integrity_signature",
]


@dataclass
class AuditExport:
    """A signed bundle of audit entries."""
    export_id: str
    exported_at: datetime
    exported_by: str
    entries: List[AuditEntry]
    integrity_signature: str = ""

    def signing_payload(self) -> Dict[str, Any]:
        return {
            "export_id": self.export_id,
            "exported_at": self.exported_at.isoformat(),
            "exported_by": self.exported_by,
            "entries": [e.to_dict() for e in self.entries],
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.signing_payload()
        data["entry_count"] = len(self.entries)
        data["integrity_signature"] = self.integrity_signature
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def to_jsonl(self) -> str:
        """One metadata line, then one line per entry."""
        header = {
            "export_id": self.export_id,
            "exported_at": self.exported_at.isoformat(),
            "exported_by": self.exported_by,
            "entry_count": len(self.entries),
            "integrity_signature": self.integrity_signature,
        }
        lines = [json.dumps(header, default=str)]
        lines.extend(json.dumps(e.to_dict(), default=str) for e in self.entries)
        return "\n".join(lines) + "\n"

    def to_csv(self) -> str:
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(CSV_COLUMNS)
        for entry in self.entries:
            writer.writerow([
                entry.entry_id,
                entry.timestamp.isoformat(),
                entry.action.value,
                entry.actor_id or "",
                entry.actor_display,
                entry.ip_address or "",
                canonicalize_json(entry.details),
                entry.integrity_signature,
            ])
        return output.getvalue()

    def render(self, export_format: ExportFormat) -> str:
        if export_format == ExportFormat.JSON:
            return self.to_json()
        if export_format == ExportFormat.JSON_LINES:
            return self.to_jsonl()
        return self.to_csv()


# ==================== Ledger ====================


class AuditLedger:
    """
    Signs, persists and verifies audit entries.

    The ledger never swallows a storage failure: callers see
    DependencyUnavailable and must treat the operation as failed.
    """

    def __init__(self, store: AuditLogStorage, signing_key: bytes, clock: Optional[Clock] = None):
        if not signing_key:
            raise ValueError("Audit signing key must not be empty")
        self._store = store
        self._signing_key = signing_key
        self._clock = clock or SystemClock()

    def __repr__(self) -> str:
        return "AuditLedger(<redacted>)"

    def sign(self, entry: AuditEntry) -> str:
        return hmac_sign(entry.signing_payload(), self._signing_key)

    def append(
        self,
        details: AuditDetails,
        actor_id: Optional[str] = None,
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> AuditEntry:
        """
        Sign and persist a new entry.

        Args:
            details: Typed payload; its class decides the action
            actor_id: Identity that caused the event, None for system events
            actor_display: Human-readable actor label
            ip_address: Client address, when known

        Returns:
            The stored entry

        Raises:
            ValidationError: if details is not a known payload type
            DependencyUnavailable: if the entry could not be persisted
        """
        if not isinstance(details, AuditDetails) or type(details) not in DETAIL_TYPES.values():
            raise ValidationError(f"Unsupported audit payload: {type(details).__name__}")

        unsigned = AuditEntry(
            entry_id=generate_random_id("aud"),
            action=details.ACTION,
            actor_id=actor_id,
            actor_display=actor_display or SYSTEM_ACTOR,
            ip_address=ip_address,
            timestamp=self._clock.now(),
            details=details.to_dict(),
        )
        entry = replace(unsigned, integrity_signature=self.sign(unsigned))

        try:
            self._store.insert_audit_entry(entry)
        except StorageError as e:
            logger.error("audit_append_failed", action=entry.action.value, error=str(e))
            raise DependencyUnavailable("Audit ledger is unavailable") from e

        logger.debug("audit_appended", action=entry.action.value, entry_id=entry.entry_id)
        return entry

    def verify(self, entry: AuditEntry) -> bool:
        """Recompute the signature and compare in constant time."""
        return hmac_verify(entry.signing_payload(), entry.integrity_signature, self._signing_key)

    def get(self, entry_id: str) -> Optional[AuditEntry]:
        try:
            return self._store.get_audit_entry(entry_id)
        except StorageError as e:
            raise DependencyUnavailable("Audit ledger is unavailable") from e

    def query(
        self,
        actor_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        newest_first: bool = True,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> List[AuditEntry]:
        try:
            return self._store.query_audit_entries(AuditQuery(
                actor_id=actor_id,
                action=action,
                since=since,
                until=until,
                newest_first=newest_first,
                limit=limit,
                offset=offset,
            ))
        except StorageError as e:
            raise DependencyUnavailable("Audit ledger is unavailable") from e

    def verify_all(self, batch_size: int = 500) -> LedgerVerification:
        """Scan every stored entry, oldest first, and report corrupted ids."""
        result = LedgerVerification()
        offset = 0
        while True:
            batch = self.query(newest_first=False, limit=batch_size, offset=offset)
            for entry in batch:
                result.total += 1
                if not self.verify(entry):
                    result.corrupted.append(entry.entry_id)
            if len(batch) < batch_size:
                break
            offset += batch_size

        if result.corrupted:
            logger.warning("audit_ledger_corrupted", corrupted=len(result.corrupted), total=result.total)
        else:
            logger.info("audit_ledger_verified", total=result.total)
        return result

    def export(self, entries: List[AuditEntry], exported_by: str) -> AuditExport:
        """Bundle entries under an export-level signature."""
        bundle = AuditExport(
            export_id=generate_random_id("exp"),
            exported_at=self._clock.now(),
            exported_by=exported_by,
            entries=list(entries),
        )
        bundle.integrity_signature = hmac_sign(bundle.signing_payload(), self._signing_key)
        return bundle

    def verify_export(self, bundle: AuditExport) -> bool:
        """True if the bundle and every entry in it are untouched."""
        if not hmac_verify(bundle.signing_payload(), bundle.integrity_signature, self._signing_key):
            return False
        return all(self.verify(e) for e in bundle.entries)
