"""
Base Storage Interfaces for AKIRA

Defines abstract interfaces for the identity store and the audit ledger.
Implementations must be:
- Thread-safe
- Atomic per key (conditional updates return False instead of clobbering)
- Append-only for audit entries
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

from akira.core.models import (
    AccessRequest,
    AccessRequestStatus,
    ApiKey,
    AuditAction,
    AuditEntry,
    Identity,
    PendingChallenge,
)
from akira.errors import DependencyUnavailable, ImmutabilityViolation


class StorageError(Exception):
    """Base exception for storage errors."""
    pass


class NotFoundError(StorageError):
    """Raised when a requested item is not found."""
    pass


class DuplicateError(StorageError):
    """Raised when trying to create a duplicate item."""
    pass


class StorageBackend(ABC):
    """
    Abstract base class for storage backends.

    All storage operations should be:
    - Atomic (complete or fail entirely)
    - Durable (survive restarts, for persistent backends)
    - Consistent (no partial writes)
    """

    @abstractmethod
    def initialize(self) -> None:
        """Initialize the storage backend (create tables, etc.)."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close connections and clean up resources."""
        pass

    @abstractmethod
    def health_check(self) -> Tuple[bool, str]:
        """
        Check if the storage backend is healthy.

        Returns (is_healthy, message).
        """
        pass


class IdentityStore(ABC):
    """Persists operator identities."""

    @abstractmethod
    def insert_identity(self, identity: Identity) -> Identity:
        """Insert a new identity. Raises DuplicateError if the email exists."""
        pass

    @abstractmethod
    def find_identity(self, identity_id: str) -> Optional[Identity]:
        pass

    @abstractmethod
    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        """Lookup by lower-cased email."""
        pass

    @abstractmethod
    def update_identity(self, identity: Identity) -> Identity:
        """Replace a stored identity. Raises NotFoundError if missing."""
        pass

    @abstractmethod
    def delete_identity(self, identity_id: str) -> int:
        """
        Delete an identity and every API key it owns, atomically.

        Returns the number of API keys removed. Raises NotFoundError if missing.
        """
        pass

    @abstractmethod
    def list_identities(self, limit: int = 100, offset: int = 0) -> List[Identity]:
        pass

    @abstractmethod
    def count_identities(self) -> int:
        pass

    @abstractmethod
    def list_identities_by_role(self, role: str) -> List[Identity]:
        pass


class ApiKeyStore(ABC):
    """Persists API key records (ciphertext and fingerprint only)."""

    @abstractmethod
    def insert_api_key(self, api_key: ApiKey) -> ApiKey:
        """
        Insert a key owned by an existing identity.

        Raises DuplicateError on id or fingerprint collision, NotFoundError if
        owner_id is not a stored identity.
        """
        pass

    @abstractmethod
    def find_api_key(self, key_id: str) -> Optional[ApiKey]:
        pass

    @abstractmethod
    def find_api_key_by_fingerprint(self, fingerprint: str) -> Optional[ApiKey]:
        pass

    @abstractmethod
    def list_api_keys(self, owner_id: str) -> List[ApiKey]:
        """Keys owned by an identity, oldest first."""
        pass

    @abstractmethod
    def list_all_api_keys(self) -> List[ApiKey]:
        pass

    @abstractmethod
    def swap_api_key_secret(
        self,
        key_id: str,
        expected_fingerprint: str,
        cipher_text: str,
        iv: str,
        fingerprint: str,
        expires_at: datetime,
        rotated_at: Optional[datetime],
    ) -> bool:
        """
        Replace the stored secret only if the current fingerprint matches.

        Returns False when the key is missing or was rotated concurrently.
        """
        pass

    @abstractmethod
    def delete_api_key(self, key_id: str) -> bool:
        pass


class ChallengeStore(ABC):
    """Ephemeral one-time-code challenges keyed by email."""

    @abstractmethod
    def put_challenge(self, challenge: PendingChallenge) -> None:
        """Store a challenge, replacing any existing one for the email."""
        pass

    @abstractmethod
    def get_challenge(self, email: str) -> Optional[PendingChallenge]:
        pass

    @abstractmethod
    def reserve_challenge_attempt(self, email: str, challenge_id: str, max_attempts: int) -> Optional[int]:
        """
        Atomically consume one attempt of the given challenge version.

        The count is only bumped while it is below max_attempts. Returns the
        new count, or None if the challenge was replaced, removed, or has no
        attempts left.
        """
        pass

    @abstractmethod
    def delete_challenge(self, email: str, challenge_id: Optional[str] = None) -> bool:
        """Remove the challenge; with challenge_id, only if it is still that version."""
        pass

    @abstractmethod
    def purge_expired_challenges(self, now: datetime) -> int:
        pass


@dataclass
class AuditQuery:
    """Filter, sort and paging for audit retrieval."""
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    newest_first: bool = True
    limit: Optional[int] = 50
    offset: int = 0


class AuditLogStorage(ABC):
    """
    Interface for storing audit log entries.

    Entries are insert-only. update_audit_entry and delete_audit_entry are
    part of the interface so that every caller hits the same guard; they
    always raise ImmutabilityViolation and subclasses must not override them.
    """

    @abstractmethod
    def insert_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        pass

    @abstractmethod
    def get_audit_entry(self, entry_id: str) -> Optional[AuditEntry]:
        pass

    @abstractmethod
    def query_audit_entries(self, query: AuditQuery) -> List[AuditEntry]:
        pass

    @abstractmethod
    def count_audit_entries(self) -> int:
        pass

    def update_audit_entry(self, entry_id: str, **changes: Any) -> None:
        raise ImmutabilityViolation(entry_id=entry_id)

    def delete_audit_entry(self, entry_id: str) -> None:
        raise ImmutabilityViolation(entry_id=entry_id)


class AccessRequestStore(ABC):
    """Persists role elevation requests."""

    @abstractmethod
    def insert_access_request(self, request: AccessRequest) -> AccessRequest:
        """Raises NotFoundError if identity_id is not a stored identity."""
        pass

    @abstractmethod
    def find_access_request(self, request_id: str) -> Optional[AccessRequest]:
        pass

    @abstractmethod
    def find_pending_request_for(self, identity_id: str) -> Optional[AccessRequest]:
        pass

    @abstractmethod
    def list_access_requests(self, status: Optional[AccessRequestStatus] = None) -> List[AccessRequest]:
        """Requests, newest first."""
        pass

    @abstractmethod
    def transition_access_request(
        self,
        request_id: str,
        expected: AccessRequestStatus,
        new_status: AccessRequestStatus,
        processed_by: Optional[str],
        processed_at: Optional[datetime],
    ) -> bool:
        """Conditionally move a request out of `expected`. False if it was not in that state."""
        pass


class GatewayStore(StorageBackend, IdentityStore, ApiKeyStore, ChallengeStore, AuditLogStorage, AccessRequestStore):
    """Everything the gateway needs from a single backend."""
    pass


@dataclass
class StorageConfig:
    """Configuration for storage backend."""
    backend_type: str = "sqlite"  # "sqlite", "memory"
    connection_string: str = "akira.db"
    pool_size: int = 5

    @classmethod
    def from_url(cls, url: str) -> "StorageConfig":
        if url.startswith("memory://"):
            return cls(backend_type="memory", connection_string="")
        if url.startswith("sqlite:///"):
            return cls(backend_type="sqlite", connection_string=url[len("sqlite:///"):])
        raise ValueError(f"Unsupported database URL: {url}")


def create_storage_backend(config: StorageConfig) -> GatewayStore:
    """
    Factory function to create a storage backend.

    Args:
        config: Storage configuration

    Returns:
        Initialized storage backend
    """
    if config.backend_type == "sqlite":
        from akira.storage.sqlite import SQLiteBackend
        backend: GatewayStore = SQLiteBackend(config.connection_string, pool_size=config.pool_size)
    elif config.backend_type == "memory":
        from akira.storage.memory import InMemoryBackend
        backend = InMemoryBackend()
    else:
        raise ValueError(f"Unknown backend type: {config.backend_type}")
    backend.initialize()
    return backend


@contextmanager
def store_guard(component: str = "Identity store") -> Iterator[None]:
    """Translate storage failures into DependencyUnavailable for service callers."""
    try:
        yield
    except StorageError as e:
        raise DependencyUnavailable(f"{component} is unavailable") from e
