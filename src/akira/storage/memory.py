"""
In-memory storage backend.

Single-process store used by tests and development. All state sits behind one
lock, which gives the per-key atomic read-modify-write the services rely on.
"""

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from akira.core.models import (
    AccessRequest,
    AccessRequestStatus,
    ApiKey,
    AuditEntry,
    Identity,
    PendingChallenge,
)
from akira.storage.base import (
    AuditQuery,
    DuplicateError,
    GatewayStore,
    NotFoundError,
)


def _copy_entry(entry: AuditEntry) -> AuditEntry:
    # Stored entries never share their details dict with a caller
    return replace(entry, details=copy.deepcopy(entry.details))


class InMemoryBackend(GatewayStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._identities: Dict[str, Identity] = {}
        self._email_index: Dict[str, str] = {}  # email -> identity_id
        self._keys: Dict[str, ApiKey] = {}
        self._fingerprint_index: Dict[str, str] = {}  # fingerprint -> key_id
        self._challenges: Dict[str, PendingChallenge] = {}
        self._audit: List[AuditEntry] = []
        self._audit_ids: Dict[str, AuditEntry] = {}
        self._requests: Dict[str, AccessRequest] = {}
        self._initialized = False

    # StorageBackend

    def initialize(self) -> None:
        self._initialized = True

    def close(self) -> None:
        self._initialized = False

    def health_check(self) -> Tuple[bool, str]:
        if not self._initialized:
            return False, "Backend not initialized"
        return True, "OK"

    # IdentityStore

    def insert_identity(self, identity: Identity) -> Identity:
        with self._lock:
            if identity.id in self._identities:
                raise DuplicateError(f"Identity {identity.id} already exists")
            if identity.email in self._email_index:
                raise DuplicateError("Email already registered")
            self._identities[identity.id] = replace(identity)
            self._email_index[identity.email] = identity.id
            return identity

    def find_identity(self, identity_id: str) -> Optional[Identity]:
        with self._lock:
            identity = self._identities.get(identity_id)
            return replace(identity) if identity else None

    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._lock:
            identity_id = self._email_index.get(email)
            return self.find_identity(identity_id) if identity_id else None

    def update_identity(self, identity: Identity) -> Identity:
        with self._lock:
            current = self._identities.get(identity.id)
            if current is None:
                raise NotFoundError(f"Identity {identity.id} not found")
            if identity.email != current.email:
                if identity.email in self._email_index:
                    raise DuplicateError("Email already registered")
                del self._email_index[current.email]
                self._email_index[identity.email] = identity.id
            self._identities[identity.id] = replace(identity)
            return identity

    def delete_identity(self, identity_id: str) -> int:
        with self._lock:
            identity = self._identities.pop(identity_id, None)
            if identity is None:
                raise NotFoundError(f"Identity {identity_id} not found")
            self._email_index.pop(identity.email, None)
            owned = [k for k in self._keys.values() if k.owner_id == identity_id]
            for key in owned:
                self._remove_key(key.id)
            self._challenges.pop(identity.email, None)
            for request_id in [r.id for r in self._requests.values() if r.identity_id == identity_id]:
                del self._requests[request_id]
            return len(owned)

    def list_identities(self, limit: int = 100, offset: int = 0) -> List[Identity]:
        with self._lock:
            ordered = sorted(self._identities.values(), key=lambda i: i.created_at)
            return [replace(i) for i in ordered[offset:offset + limit]]

    def count_identities(self) -> int:
        with self._lock:
            return len(self._identities)

    def list_identities_by_role(self, role: str) -> List[Identity]:
        with self._lock:
            return [replace(i) for i in self._identities.values() if i.role.value == role]

    # ApiKeyStore

    def insert_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._lock:
            if api_key.owner_id not in self._identities:
                raise NotFoundError(f"Identity {api_key.owner_id} not found")
            if api_key.id in self._keys:
                raise DuplicateError(f"API key {api_key.id} already exists")
            if api_key.fingerprint in self._fingerprint_index:
                raise DuplicateError("Fingerprint collision")
            self._keys[api_key.id] = replace(api_key, scopes=list(api_key.scopes))
            self._fingerprint_index[api_key.fingerprint] = api_key.id
            return api_key

    def find_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._lock:
            key = self._keys.get(key_id)
            return replace(key, scopes=list(key.scopes)) if key else None

    def find_api_key_by_fingerprint(self, fingerprint: str) -> Optional[ApiKey]:
        with self._lock:
            key_id = self._fingerprint_index.get(fingerprint)
            return self.find_api_key(key_id) if key_id else None

    def list_api_keys(self, owner_id: str) -> List[ApiKey]:
        with self._lock:
            owned = [k for k in self._keys.values() if k.owner_id == owner_id]
            return [replace(k, scopes=list(k.scopes)) for k in sorted(owned, key=lambda k: k.created_at)]

    def list_all_api_keys(self) -> List[ApiKey]:
        with self._lock:
            return [replace(k, scopes=list(k.scopes)) for k in sorted(self._keys.values(), key=lambda k: k.created_at)]

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
        with self._lock:
            current = self._keys.get(key_id)
            if current is None or current.fingerprint != expected_fingerprint:
                return False
            if fingerprint != expected_fingerprint and fingerprint in self._fingerprint_index:
                raise DuplicateError("Fingerprint collision")
            del self._fingerprint_index[current.fingerprint]
            self._keys[key_id] = replace(
                current,
                cipher_text=cipher_text,
                iv=iv,
                fingerprint=fingerprint,
                expires_at=expires_at,
                rotated_at=rotated_at,
            )
            self._fingerprint_index[fingerprint] = key_id
            return True

    def delete_api_key(self, key_id: str) -> bool:
        with self._lock:
            return self._remove_key(key_id)

    def _remove_key(self, key_id: str) -> bool:
        key = self._keys.pop(key_id, None)
        if key is None:
            return False
        self._fingerprint_index.pop(key.fingerprint, None)
        return True

    # ChallengeStore

    def put_challenge(self, challenge: PendingChallenge) -> None:
        with self._lock:
            self._challenges[challenge.email] = challenge

    def get_challenge(self, email: str) -> Optional[PendingChallenge]:
        with self._lock:
            return self._challenges.get(email)

    def reserve_challenge_attempt(self, email: str, challenge_id: str, max_attempts: int) -> Optional[int]:
        with self._lock:
            current = self._challenges.get(email)
            if current is None or current.challenge_id != challenge_id:
                return None
            if current.attempt_count >= max_attempts:
                return None
            updated = current.with_attempts(current.attempt_count + 1)
            self._challenges[email] = updated
            return updated.attempt_count

    def delete_challenge(self, email: str, challenge_id: Optional[str] = None) -> bool:
        with self._lock:
            current = self._challenges.get(email)
            if current is None:
                return False
            if challenge_id is not None and current.challenge_id != challenge_id:
                return False
            del self._challenges[email]
            return True

    def purge_expired_challenges(self, now: datetime) -> int:
        with self._lock:
            expired = [email for email, c in self._challenges.items() if c.is_expired(now)]
            for email in expired:
                del self._challenges[email]
            return len(expired)

    # AuditLogStorage

    def insert_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            if entry.entry_id in self._audit_ids:
                raise DuplicateError(f"Audit entry {entry.entry_id} already exists")
            stored = _copy_entry(entry)
            self._audit.append(stored)
            self._audit_ids[entry.entry_id] = stored
            return entry

    def get_audit_entry(self, entry_id: str) -> Optional[AuditEntry]:
        with self._lock:
            entry = self._audit_ids.get(entry_id)
            return _copy_entry(entry) if entry else None

    def query_audit_entries(self, query: AuditQuery) -> List[AuditEntry]:
        with self._lock:
            # Insertion index breaks timestamp ties so ordering is stable
            indexed = list(enumerate(self._audit))
        matches = [
            (i, e) for i, e in indexed
            if (query.actor_id is None or e.actor_id == query.actor_id)
            and (query.action is None or e.action == query.action)
            and (query.since is None or e.timestamp >= query.since)
            and (query.until is None or e.timestamp <= query.until)
        ]
        matches.sort(key=lambda pair: (pair[1].timestamp, pair[0]), reverse=query.newest_first)
        entries = [e for _, e in matches][query.offset:]
        if query.limit is not None:
            entries = entries[:query.limit]
        return [_copy_entry(e) for e in entries]

    def count_audit_entries(self) -> int:
        with self._lock:
            return len(self._audit)

    # AccessRequestStore

    def insert_access_request(self, request: AccessRequest) -> AccessRequest:
        with self._lock:
            if request.identity_id not in self._identities:
                raise NotFoundError(f"Identity {request.identity_id} not found")
            if request.id in self._requests:
                raise DuplicateError(f"Access request {request.id} already exists")
            self._requests[request.id] = replace(request)
            return request

    def find_access_request(self, request_id: str) -> Optional[AccessRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return replace(request) if request else None

    def find_pending_request_for(self, identity_id: str) -> Optional[AccessRequest]:
        with self._lock:
            for request in self._requests.values():
                if request.identity_id == identity_id and request.status == AccessRequestStatus.PENDING:
                    return replace(request)
            return None

    def list_access_requests(self, status: Optional[AccessRequestStatus] = None) -> List[AccessRequest]:
        with self._lock:
            requests = [r for r in self._requests.values() if status is None or r.status == status]
            return [replace(r) for r in sorted(requests, key=lambda r: r.created_at, reverse=True)]

    def transition_access_request(
        self,
        request_id: str,
        expected: AccessRequestStatus,
        new_status: AccessRequestStatus,
        processed_by: Optional[str],
        processed_at: Optional[datetime],
    ) -> bool:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status != expected:
                return False
            self._requests[request_id] = replace(
                current,
                status=new_status,
                processed_by=processed_by,
                processed_at=processed_at,
            )
            return True
