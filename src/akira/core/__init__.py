"""Core services for the AKIRA access gateway."""

from akira.core.clock import Clock, SystemClock, FrozenClock
from akira.core.policy import AccessPolicy, Capability, Role
from akira.core.vault import CredentialVault
from akira.core.audit import AuditLedger, AuditExport, ExportFormat, LedgerVerification
from akira.core.api_keys import ApiKeyManager, ApiKeyPrincipal, IssuedKey, RotatedKey
from akira.core.auth import AuthSessionMachine, AuthenticatedSession, ChallengeSummary
from akira.core.tokens import SessionClaims, SessionTokenService
from akira.core.identities import IdentityDirectory
from akira.core.access_requests import AccessRequestService
from akira.core.notifier import (
    Notifier,
    LogNotifier,
    WebhookNotifier,
    RecordingNotifier,
    NotificationDispatcher,
)
from akira.core.gateway import AccessGateway, create_gateway

__all__ = [
    "Clock",
    "SystemClock",
    "FrozenClock",
    "AccessPolicy",
    "Capability",
    "Role",
    "CredentialVault",
    "AuditLedger",
    "AuditExport",
    "ExportFormat",
    "LedgerVerification",
    "ApiKeyManager",
    "ApiKeyPrincipal",
    "IssuedKey",
    "RotatedKey",
    "AuthSessionMachine",
    "AuthenticatedSession",
    "ChallengeSummary",
    "SessionClaims",
    "SessionTokenService",
    "IdentityDirectory",
    "AccessRequestService",
    "Notifier",
    "LogNotifier",
    "WebhookNotifier",
    "RecordingNotifier",
    "NotificationDispatcher",
    "AccessGateway",
    "create_gateway",
]
