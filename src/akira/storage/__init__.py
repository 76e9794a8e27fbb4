"""
Storage module for AKIRA

Provides the keyed stores behind the gateway:
- Identities
- API keys (ciphertext and fingerprint only)
- Pending MFA challenges
- Audit log (append-only)
- Access requests

Backends:
- In-memory (tests/development)
- SQLite (single-node)
"""

from akira.storage.base import (
    StorageBackend,
    IdentityStore,
    ApiKeyStore,
    ChallengeStore,
    AuditLogStorage,
    AccessRequestStore,
    GatewayStore,
    AuditQuery,
    StorageConfig,
    StorageError,
    NotFoundError,
    DuplicateError,
    create_storage_backend,
    store_guard,
)
from akira.storage.memory import InMemoryBackend
from akira.storage.sqlite import SQLiteBackend

__all__ = [
    "StorageBackend",
    "IdentityStore",
    "ApiKeyStore",
    "ChallengeStore",
    "AuditLogStorage",
    "AccessRequestStore",
    "GatewayStore",
    "AuditQuery",
    "StorageConfig",
    "StorageError",
    "NotFoundError",
    "DuplicateError",
    "InMemoryBackend",
    "SQLiteBackend",
    "create_storage_backend",
    "store_guard",
]
