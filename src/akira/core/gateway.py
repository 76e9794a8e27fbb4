"""
Access Gateway

The operation surface a request router calls. For every call the gateway:
1. Resolves the calling identity from the store (unknown caller -> Denied)
2. Checks the caller's role against the AccessPolicy; a denial is written to
   the audit ledger before Forbidden is raised
3. Delegates to the service that owns the operation
4. Returns plain dictionaries

Transport concerns (HTTP, TLS, throttling) live outside this package.
"""

from typing import Any, Dict, Iterable, List, Optional

from akira.config import AkiraConfig, SecretProvider, get_config
from akira.core.access_requests import AccessRequestService
from akira.core.api_keys import ApiKeyManager
from akira.core.audit import AccessDenied, AuditExport, AuditLedger, LogsExported
from akira.core.auth import AuthSessionMachine
from akira.core.clock import Clock, SystemClock
from akira.core.entropy import KeySource, build_rotation_source
from akira.core.identities import IdentityDirectory
from akira.core.models import Identity
from akira.core.notifier import LogNotifier, NotificationDispatcher, Notifier
from akira.core.policy import AccessPolicy, Capability
from akira.core.tokens import SessionClaims, SessionTokenService
from akira.core.vault import CredentialVault
from akira.errors import Denied, ValidationError
from akira.monitoring.logging import OperationLogger, get_logger
from akira.storage.base import GatewayStore, StorageConfig, create_storage_backend, store_guard

logger = get_logger(__name__)


class AccessGateway:
    """Facade over the authentication, key, audit and admin services."""

    def __init__(
        self,
        store: GatewayStore,
        auth: AuthSessionMachine,
        keys: ApiKeyManager,
        ledger: AuditLedger,
        directory: IdentityDirectory,
        access_requests: AccessRequestService,
        policy: Optional[AccessPolicy] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        password_hasher: Any = None,
    ):
        self.store = store
        self.auth = auth
        self.keys = keys
        self.ledger = ledger
        self.directory = directory
        self.access_requests = access_requests
        self.policy = policy or AccessPolicy()
        self._dispatcher = dispatcher
        self._password_hasher = password_hasher

    # ==================== Caller resolution ====================

    def _caller(self, caller_id: str, ip_address: Optional[str] = None) -> Identity:
        with store_guard():
            identity = self.store.find_identity(caller_id) if caller_id else None
        if identity is None:
            self.ledger.append(
                AccessDenied(reason="unknown_caller"),
                actor_id=None,
                actor_display="Anonymous",
                ip_address=ip_address,
            )
            raise Denied("Unknown caller")
        return identity

    def _authorize(
        self,
        caller_id: str,
        capability: Capability,
        ip_address: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> Identity:
        """Resolve the caller and require a capability, auditing any denial."""
        caller = self._caller(caller_id, ip_address)
        if not self.policy.can_perform(caller.role, capability):
            self.ledger.append(
                AccessDenied(reason="insufficient_role", capability=capability.value, resource=resource),
                actor_id=caller.id,
                actor_display=caller.display_name,
                ip_address=ip_address,
            )
            logger.info("access_denied", identity_id=caller.id, capability=capability.value)
            self.policy.require(caller.role, capability)
        return caller

    # ==================== Authentication ====================

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        with OperationLogger(logger, "register"):
            return self.auth.register(email, password, display_name, ip_address).to_dict()

    def begin_login(self, email: str, password: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        with OperationLogger(logger, "begin_login"):
            return self.auth.begin_login(email, password, ip_address).to_dict()

    def verify_challenge(self, email: str, code: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        with OperationLogger(logger, "verify_challenge"):
            return self.auth.verify_challenge(email, code, ip_address).to_dict()

    def authenticate_session(self, session_token: str) -> SessionClaims:
        return self.auth.verify_session(session_token)

    def end_session(self, session_token: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        with OperationLogger(logger, "end_session"):
            self.auth.end_session(session_token, ip_address)
            return {"ok": True}

    def change_password(
        self,
        caller_id: str,
        old_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        with OperationLogger(logger, "change_password"):
            caller = self._caller(caller_id, ip_address)
            self.auth.change_password(caller.id, old_password, new_password, ip_address)
            return {"ok": True}

    # ==================== API keys ====================

    def issue_api_key(
        self,
        caller_id: str,
        name: str,
        scopes: Optional[Iterable[str]] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        with OperationLogger(logger, "issue_api_key"):
            caller = self._authorize(caller_id, Capability.KEYS_ISSUE, ip_address)
            issued = self.keys.issue(caller.id, name, scopes, caller.display_name, ip_address)
            return issued.to_dict()

    def rotate_api_key(self, caller_id: str, key_id: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        with OperationLogger(logger, "rotate_api_key", key_id=key_id):
            caller = self._authorize(caller_id, Capability.KEYS_MANAGE, ip_address, resource=key_id)
            return self.keys.rotate(key_id, caller.id, caller.display_name, ip_address).to_dict()

    def revoke_api_key(self, caller_id: str, key_id: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        with OperationLogger(logger, "revoke_api_key", key_id=key_id):
            caller = self._authorize(caller_id, Capability.KEYS_MANAGE, ip_address, resource=key_id)
            self.keys.revoke(key_id, caller.id, caller.display_name, ip_address)
            return {"ok": True}

    def list_api_keys(self, caller_id: str) -> List[Dict[str, Any]]:
        caller = self._authorize(caller_id, Capability.KEYS_MANAGE)
        return self.keys.list(caller.id)

    def authenticate_api_key(
        self,
        presented_secret: str,
        required_scope: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        with OperationLogger(logger, "authenticate_api_key"):
            return self.keys.authenticate(presented_secret, required_scope, ip_address).to_dict()

    def reencrypt_api_keys(self, caller_id: str, new_master_key: bytes) -> Dict[str, Any]:
        with OperationLogger(logger, "reencrypt_api_keys"):
            caller = self._authorize(caller_id, Capability.KEYS_REENCRYPT)
            try:
                new_vault = CredentialVault(new_master_key, self._password_hasher)
            except ValueError as e:
                raise ValidationError(str(e))
            count = self.keys.reencrypt_all(new_vault, caller.id, caller.display_name)
            return {"ok": True, "keys_reencrypted": count}

    # ==================== Audit ====================

    def export_audit_bundle(
        self,
        caller_id: str,
        limit: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> AuditExport:
        """
        Signed export of the ledger, oldest first.

        The LOGS_EXPORTED entry is appended after the entries are collected,
        so an export never contains its own export record.
        """
        with OperationLogger(logger, "export_audit_log"):
            caller = self._authorize(caller_id, Capability.AUDIT_EXPORT, ip_address)
            entries = self.ledger.query(newest_first=False, limit=limit)
            bundle = self.ledger.export(entries, exported_by=caller.id)
            self.ledger.append(
                LogsExported(export_id=bundle.export_id, entry_count=len(entries)),
                actor_id=caller.id,
                actor_display=caller.display_name,
                ip_address=ip_address,
            )
            return bundle

    def export_audit_log(
        self,
        caller_id: str,
        limit: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.export_audit_bundle(caller_id, limit, ip_address).to_dict()

    def my_audit_log(self, caller_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        caller = self._authorize(caller_id, Capability.AUDIT_READ_OWN)
        return [e.to_dict() for e in self.ledger.query(actor_id=caller.id, limit=limit)]

    def verify_audit_log(self, caller_id: str) -> Dict[str, Any]:
        with OperationLogger(logger, "verify_audit_log"):
            self._authorize(caller_id, Capability.AUDIT_VERIFY)
            return self.ledger.verify_all().to_dict()

    # ==================== Identities ====================

    def list_identities(self, caller_id: str, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        self._authorize(caller_id, Capability.USERS_READ)
        return self.directory.list_identities(limit, offset)

    def change_role(
        self,
        caller_id: str,
        target_id: str,
        role: str,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        with OperationLogger(logger, "change_role", target_id=target_id):
            caller = self._authorize(caller_id, Capability.USERS_UPDATE_ROLE, ip_address, resource=target_id)
            return self.directory.change_role(caller.id, target_id, role, caller.display_name, ip_address)

    def delete_identity(self, caller_id: str, target_id: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        with OperationLogger(logger, "delete_identity", target_id=target_id):
            caller = self._authorize(caller_id, Capability.USERS_DELETE, ip_address, resource=target_id)
            removed = self.directory.delete_identity(caller.id, target_id, caller.display_name, ip_address)
            return {"ok": True, "keys_removed": removed}

    # ==================== Access requests ====================

    def submit_access_request(
        self,
        caller_id: str,
        role: str,
        reason: str,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        with OperationLogger(logger, "submit_access_request"):
            caller = self._authorize(caller_id, Capability.ACCESS_REQUEST, ip_address)
            return self.access_requests.submit(caller.id, role, reason, caller.display_name, ip_address).to_dict()

    def my_access_requests(self, caller_id: str) -> List[Dict[str, Any]]:
        caller = self._caller(caller_id)
        return self.access_requests.list_for(caller.id)

    def list_access_requests(self, caller_id: str) -> List[Dict[str, Any]]:
        self._authorize(caller_id, Capability.ACCESS_PROCESS)
        return self.access_requests.list_pending()

    def process_access_request(
        self,
        caller_id: str,
        request_id: str,
        approve: bool,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        with OperationLogger(logger, "process_access_request", request_id=request_id):
            caller = self._authorize(caller_id, Capability.ACCESS_PROCESS, ip_address, resource=request_id)
            decided = self.access_requests.process(caller.id, request_id, approve, caller.display_name, ip_address)
            return decided.to_dict()

    # ==================== Lifecycle ====================

    def health_check(self) -> Dict[str, Any]:
        healthy, message = self.store.health_check()
        return {"healthy": healthy, "storage": message}

    def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.shutdown(wait=True)
        self.store.close()


def create_gateway(
    config: Optional[AkiraConfig] = None,
    store: Optional[GatewayStore] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
    key_source: Optional[KeySource] = None,
    password_hasher: Any = None,
    secrets: Optional[SecretProvider] = None,
) -> AccessGateway:
    """
    Wire a gateway from configuration.

    Args:
        config: Configuration (defaults to get_config())
        store: Storage backend (defaults to one built from config.database_url)
        notifier: Code/notification delivery (defaults to LogNotifier)
        clock: Time source (defaults to SystemClock)
        key_source: External high-entropy source for rotation, if any
        password_hasher: argon2 PasswordHasher override
        secrets: Secret provider (defaults to config.secret_provider())
    """
    config = config or get_config()
    clock = clock or SystemClock()
    provider = secrets or config.secret_provider()
    if store is None:
        store = create_storage_backend(StorageConfig.from_url(config.database_url))

    vault = CredentialVault(provider.master_key(), password_hasher)
    ledger = AuditLedger(store, provider.signing_key(), clock)
    tokens = SessionTokenService(provider.session_secret(), config.session_ttl_seconds, clock)
    dispatcher = NotificationDispatcher(notifier or LogNotifier(), max_workers=config.notifier_workers)

    auth = AuthSessionMachine(
        identities=store,
        challenges=store,
        vault=vault,
        ledger=ledger,
        tokens=tokens,
        dispatcher=dispatcher,
        clock=clock,
        otp_ttl_seconds=config.otp_ttl_seconds,
        max_attempts=config.otp_max_attempts,
    )
    keys = ApiKeyManager(
        store=store,
        vault=vault,
        ledger=ledger,
        clock=clock,
        validity_days=config.key_validity_days,
        rotation_source=build_rotation_source(key_source, config.rotation_fallback),
    )

    logger.info("gateway_created", database_url=config.database_url.split("://", 1)[0])
    return AccessGateway(
        store=store,
        auth=auth,
        keys=keys,
        ledger=ledger,
        directory=IdentityDirectory(store, ledger, clock),
        access_requests=AccessRequestService(store, ledger, dispatcher, clock),
        dispatcher=dispatcher,
        password_hasher=password_hasher,
    )
