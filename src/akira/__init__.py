"""
AKIRA Access Gateway

Identity, API key and audit governance for a protected application.

Core Components:
- Audit Ledger: Append-only, HMAC-signed record of security events
- Credential Vault: Secret generation, AES-GCM encryption, password hashing
- API Key Manager: Issue, rotate, revoke and authenticate API keys
- Auth Session Machine: Registration, password + one-time-code login, sessions
- Access Policy: Role to capability mapping

"""

__version__ = "0.1.0"
__author__ = "AKIRA Team"

from akira.core.audit import AuditLedger
from akira.core.vault import CredentialVault
from akira.core.api_keys import ApiKeyManager
from akira.core.auth import AuthSessionMachine
from akira.core.policy import AccessPolicy, Role, Capability
from akira.core.gateway import AccessGateway, create_gateway

__all__ = [
    "AuditLedger",
    "CredentialVault",
    "ApiKeyManager",
    "AuthSessionMachine",
    "AccessPolicy",
    "Role",
    "Capability",
    "AccessGateway",
    "create_gateway",
]
