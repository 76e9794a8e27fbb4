"""
API Key Lifecycle for AKIRA

Provides machine credential management with:
- Key generation, encryption at rest and fingerprinting
- Ownership-checked rotation and revocation
- Scoped authentication with uniform denial
- Re-encryption of every stored key under a new master key

Every transition writes through the audit ledger. When the audit append fails
the store mutation is compensated and the operation fails.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from akira.core.audit import (
    SYSTEM_ACTOR,
    AccessDenied,
    ApiAccess,
    AuditLedger,
    KeyDeleted,
    KeyIssued,
    KeyRotated,
    MasterKeyRotated,
)
from akira.core.clock import Clock, SystemClock
from akira.core.crypto import generate_random_id
from akira.core.entropy import KeySource, LocalKeySource
from akira.core.models import ApiKey, ApiKeyScope
from akira.core.vault import CredentialVault, looks_like_secret
from akira.errors import DependencyUnavailable, Denied, Forbidden, NotFound, ValidationError
from akira.monitoring.logging import get_logger
from akira.storage.base import ApiKeyStore, store_guard

logger = get_logger(__name__)

DEFAULT_SCOPES = [ApiKeyScope.READ_DATA.value]
MAX_NAME_LENGTH = 100
UNIFORM_DENIAL_REASON = "invalid_or_revoked_key"
RESEAL_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedKey:
    """Result of issuing a key. The plaintext is shown exactly once."""
    plaintext_key_once: str
    key_id: str
    scopes: List[str]
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plaintext_key_once": self.plaintext_key_once,
            "key_id": self.key_id,
            "scopes": list(self.scopes),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class RotatedKey:
    """Result of rotating a key."""
    plaintext_key_once: str
    key_id: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plaintext_key_once": self.plaintext_key_once,
            "key_id": self.key_id,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class ApiKeyPrincipal:
    """The machine caller behind a successfully authenticated key."""
    key_id: str
    owner_id: str
    scopes: List[str]
    key_name: str

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "scopes": list(self.scopes),
            "key_name": self.key_name,
        }


def normalize_scopes(scopes: Optional[Iterable[str]]) -> List[str]:
    """Validate requested scopes against the fixed set, keeping request order."""
    if scopes is None:
        return list(DEFAULT_SCOPES)
    if isinstance(scopes, str):
        scopes = [scopes]
    allowed = {s.value for s in ApiKeyScope}
    result: List[str] = []
    for scope in scopes:
        value = getattr(scope, "value", scope)
        if value not in allowed:
            raise ValidationError(f"Unknown scope: {value!r}", allowed=sorted(allowed))
        if value not in result:
            result.append(value)
    return result or list(DEFAULT_SCOPES)


def validate_key_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Key name is required")
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Key name must be at most {MAX_NAME_LENGTH} characters")
    return name


class ApiKeyManager:
    """
    Issues, rotates, revokes and authenticates API keys.

    Plaintext secrets leave this class only inside IssuedKey / RotatedKey.
    Authentication compares fingerprints; it never decrypts.
    """

    def __init__(
        self,
        store: ApiKeyStore,
        vault: CredentialVault,
        ledger: AuditLedger,
        clock: Optional[Clock] = None,
        validity_days: int = 30,
        rotation_source: Optional[KeySource] = None,
    ):
        self._store = store
        self._vault = vault
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self.validity = timedelta(days=validity_days)
        self._rotation_source = rotation_source or LocalKeySource()
        # Held while a ciphertext is sealed and written, so a master key
        # change never interleaves with issue, rotate or revoke
        self._reseal_lock = threading.RLock()

    def _seal(self, secret: str) -> Tuple[str, str, str]:
        iv, cipher_text = self._vault.encrypt(secret)
        return iv, cipher_text, self._vault.fingerprint(secret)

    def _owned_key(
        self,
        key_id: str,
        caller_id: str,
        actor_display: str,
        ip_address: Optional[str],
    ) -> ApiKey:
        with store_guard():
            key = self._store.find_api_key(key_id)
        if key is None:
            raise NotFound("API key not found", key_id=key_id)
        if key.owner_id != caller_id:
            self._ledger.append(
                AccessDenied(reason="not_key_owner", resource=key_id),
                actor_id=caller_id,
                actor_display=actor_display,
                ip_address=ip_address,
            )
            raise Forbidden("API key belongs to another identity")
        return key

    # ==================== Issue ====================

    def issue(
        self,
        owner_id: str,
        name: str,
        scopes: Optional[Iterable[str]] = None,
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> IssuedKey:
        """
        Create a new key for owner_id.

        Raises:
            ValidationError: bad name or scope
            DependencyUnavailable: store or ledger failure (nothing persisted)
        """
        name = validate_key_name(name)
        scopes = normalize_scopes(scopes)

        secret = self._vault.generate_secret()
        with self._reseal_lock:
            iv, cipher_text, fingerprint = self._seal(secret)
            now = self._clock.now()
            key = ApiKey(
                id=generate_random_id("key", 12),
                owner_id=owner_id,
                name=name,
                cipher_text=cipher_text,
                iv=iv,
                fingerprint=fingerprint,
                scopes=scopes,
                expires_at=now + self.validity,
                created_at=now,
            )

            with store_guard():
                self._store.insert_api_key(key)

            try:
                self._ledger.append(
                    KeyIssued(key_id=key.id, key_name=name, scopes=list(scopes)),
                    actor_id=owner_id,
                    actor_display=actor_display,
                    ip_address=ip_address,
                )
            except DependencyUnavailable:
                with store_guard():
                    self._store.delete_api_key(key.id)
                raise

        logger.info("api_key_issued", key_id=key.id, owner_id=owner_id, scopes=scopes)
        return IssuedKey(plaintext_key_once=secret, key_id=key.id, scopes=scopes, expires_at=key.expires_at)

    # ==================== Rotate ====================

    def rotate(
        self,
        key_id: str,
        caller_id: str,
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> RotatedKey:
        """
        Replace a key's secret in place.

        The stored fingerprint is swapped only if it still equals the one read
        here, so concurrent rotations of one key cannot both succeed.

        Raises:
            NotFound: unknown key
            Forbidden: caller does not own the key, or the key is revoked
            KeySourceUnavailable: the key source failed with no fallback
            DependencyUnavailable: lost a concurrent rotation, or store/ledger failure
        """
        key = self._owned_key(key_id, caller_id, actor_display, ip_address)
        if not key.is_active:
            raise Forbidden("API key has been revoked", key_id=key_id)

        secret = self._rotation_source.generate()
        if not looks_like_secret(secret):
            raise DependencyUnavailable("Key source returned a malformed secret")
        with self._reseal_lock:
            # Compare and restore against the ciphertext under the current master key
            with store_guard():
                current = self._store.find_api_key(key_id)
            if current is None or current.fingerprint != key.fingerprint:
                logger.warning("api_key_rotation_conflict", key_id=key_id)
                raise DependencyUnavailable("API key was modified concurrently; retry", key_id=key_id)
            key = current

            iv, cipher_text, fingerprint = self._seal(secret)
            now = self._clock.now()
            expires_at = now + self.validity

            with store_guard():
                swapped = self._store.swap_api_key_secret(
                    key_id, key.fingerprint, cipher_text, iv, fingerprint, expires_at, now,
                )
            if not swapped:
                logger.warning("api_key_rotation_conflict", key_id=key_id)
                raise DependencyUnavailable("API key was modified concurrently; retry", key_id=key_id)

            try:
                self._ledger.append(
                    KeyRotated(key_id=key_id, key_name=key.name, source=self._rotation_source.name),
                    actor_id=caller_id,
                    actor_display=actor_display,
                    ip_address=ip_address,
                )
            except DependencyUnavailable:
                with store_guard():
                    self._store.swap_api_key_secret(
                        key_id, fingerprint, key.cipher_text, key.iv, key.fingerprint,
                        key.expires_at, key.rotated_at,
                    )
                raise

        logger.info("api_key_rotated", key_id=key_id, source=self._rotation_source.name)
        return RotatedKey(plaintext_key_once=secret, key_id=key_id, expires_at=expires_at)

    # ==================== Revoke ====================

    def revoke(
        self,
        key_id: str,
        caller_id: str,
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> None:
        """Ownership-checked delete. The secret stops resolving immediately."""
        key = self._owned_key(key_id, caller_id, actor_display, ip_address)

        with self._reseal_lock:
            with store_guard():
                key = self._store.find_api_key(key_id) or key
                deleted = self._store.delete_api_key(key_id)
            if not deleted:
                raise NotFound("API key not found", key_id=key_id)

            try:
                self._ledger.append(
                    KeyDeleted(key_id=key_id, key_name=key.name),
                    actor_id=caller_id,
                    actor_display=actor_display,
                    ip_address=ip_address,
                )
            except DependencyUnavailable:
                with store_guard():
                    self._store.insert_api_key(key)
                raise

        logger.info("api_key_revoked", key_id=key_id, owner_id=caller_id)

    # ==================== Authenticate ====================

    def authenticate(
        self,
        presented_secret: Any,
        required_scope: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ApiKeyPrincipal:
        """
        Resolve a presented secret to its owner.

        Every call appends API_ACCESS or ACCESS_DENIED. Malformed, unknown,
        revoked and expired keys are indistinguishable to the caller.

        Raises:
            Denied: the key does not authenticate
            Forbidden: the key authenticates but lacks required_scope
        """
        key: Optional[ApiKey] = None
        if looks_like_secret(presented_secret):
            with store_guard():
                key = self._store.find_api_key_by_fingerprint(self._vault.fingerprint(presented_secret))

        if key is None or not key.is_usable(self._clock.now()):
            self._ledger.append(
                AccessDenied(reason=UNIFORM_DENIAL_REASON),
                actor_id=None,
                actor_display="Anonymous",
                ip_address=ip_address,
            )
            logger.info("api_key_denied", ip_address=ip_address)
            raise Denied("Invalid or revoked API key")

        actor_display = f"key:{key.name}"
        if required_scope is not None:
            required_scope = getattr(required_scope, "value", required_scope)
            if required_scope not in key.scopes:
                self._ledger.append(
                    AccessDenied(reason="insufficient_scope", capability=required_scope, resource=key.id),
                    actor_id=key.owner_id,
                    actor_display=actor_display,
                    ip_address=ip_address,
                )
                raise Forbidden("API key lacks the required scope", required_scope=required_scope)

        self._ledger.append(
            ApiAccess(key_id=key.id, key_name=key.name, scope=required_scope),
            actor_id=key.owner_id,
            actor_display=actor_display,
            ip_address=ip_address,
        )
        return ApiKeyPrincipal(key_id=key.id, owner_id=key.owner_id, scopes=list(key.scopes), key_name=key.name)

    # ==================== Listing ====================

    def list(self, owner_id: str) -> List[Dict[str, Any]]:
        """Metadata for the owner's keys. Never secrets or ciphertext."""
        now = self._clock.now()
        with store_guard():
            keys = self._store.list_api_keys(owner_id)
        return [k.metadata(now) for k in keys]

    # ==================== Master key rotation ====================

    def reencrypt_all(
        self,
        new_vault: CredentialVault,
        actor_id: Optional[str] = None,
        actor_display: str = SYSTEM_ACTOR,
    ) -> int:
        """
        Re-encrypt every stored secret under new_vault's master key.

        All ciphertexts are decrypted before any is written, so a key that
        fails to decrypt aborts the run with nothing changed. A key another
        writer changed mid-run is re-read and resealed; a key deleted mid-run
        is dropped from the count. The manager switches to new_vault only
        once every remaining key is readable under it. If that cannot be
        reached, keys already resealed are put back and the run fails.
        Fingerprints are unchanged.

        Returns:
            Number of keys re-encrypted

        Raises:
            ValidationError: a stored key does not decrypt under the current master key
            DependencyUnavailable: store failure, or a key kept changing
        """
        with self._reseal_lock:
            with store_guard():
                keys = self._store.list_all_api_keys()

            resealed = []
            for key in keys:
                iv, cipher_text = new_vault.encrypt(self._vault.decrypt(key.iv, key.cipher_text))
                resealed.append((key, iv, cipher_text))

            replaced: List[ApiKey] = []
            try:
                for key, iv, cipher_text in resealed:
                    original = self._swap_sealed(key, iv, cipher_text, new_vault)
                    if original is None:
                        logger.info("api_key_reencrypt_gone", key_id=key.id)
                    else:
                        replaced.append(original)
                count = len(replaced)
                self._ledger.append(
                    MasterKeyRotated(keys_reencrypted=count), actor_id=actor_id, actor_display=actor_display,
                )
            except (DependencyUnavailable, ValidationError):
                self._restore(replaced)
                raise

            self._vault = new_vault
        logger.info("master_key_rotated", keys_reencrypted=count)
        return count

    def _swap_sealed(self, key: ApiKey, iv: str, cipher_text: str, new_vault: CredentialVault) -> Optional[ApiKey]:
        """
        Store one resealed secret, following concurrent writes to the key.

        Returns the version that was replaced, or None if the key is gone.
        """
        for _ in range(RESEAL_ATTEMPTS):
            with store_guard():
                if self._store.swap_api_key_secret(
                    key.id, key.fingerprint, cipher_text, iv, key.fingerprint, key.expires_at, key.rotated_at,
                ):
                    return key
                current = self._store.find_api_key(key.id)
            if current is None:
                return None
            logger.warning("api_key_changed_during_reencrypt", key_id=key.id)
            key = current
            iv, cipher_text = new_vault.encrypt(self._vault.decrypt(key.iv, key.cipher_text))
        raise DependencyUnavailable("API key kept changing during re-encryption; retry", key_id=key.id)

    def _restore(self, replaced: List[ApiKey]) -> None:
        """Put the old-master-key ciphertext back on keys already resealed."""
        for original in replaced:
            with store_guard():
                restored = self._store.swap_api_key_secret(
                    original.id, original.fingerprint, original.cipher_text, original.iv,
                    original.fingerprint, original.expires_at, original.rotated_at,
                )
            if not restored:
                logger.error("api_key_restore_failed", key_id=original.id)
