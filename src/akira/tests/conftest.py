"""
Test Configuration and Fixtures

Provides:
- A frozen clock and an in-memory store per test
- A cheap argon2 hasher so password-heavy tests stay fast
- A recording notifier delivered inline
- A fully wired gateway and helpers for identities and logins
"""

import re
from typing import Callable, Generator

import pytest
from argon2 import PasswordHasher

from akira.config import AkiraConfig, reset_config
from akira.core.audit import AuditLedger
from akira.core.clock import FrozenClock
from akira.core.crypto import generate_random_id
from akira.core.gateway import AccessGateway, create_gateway
from akira.core.models import AuditEntry, Identity
from akira.core.notifier import NotificationDispatcher, RecordingNotifier
from akira.core.policy import Role
from akira.core.vault import CredentialVault
from akira.storage.base import StorageError
from akira.storage.memory import InMemoryBackend

TEST_MASTER_KEY = bytes(range(32))
TEST_SIGNING_KEY = "test-audit-signing-key-0123456789abcdef"
TEST_SESSION_SECRET = "test_session_secret_12345678901234567890"
TEST_PASSWORD = "Str0ng!Pass"

CODE_IN_BODY = re.compile(r"\b(\d{6})\b")


class FlakyBackend(InMemoryBackend):
    """In-memory store whose audit writes can be switched off."""

    def __init__(self):
        super().__init__()
        self.fail_audit_writes = False

    def insert_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        if self.fail_audit_writes:
            raise StorageError("audit table unavailable")
        return super().insert_audit_entry(entry)


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Keep the process environment out of every test."""
    for name in ("AKIRA_DATABASE_URL", "AKIRA_MASTER_KEY", "AKIRA_AUDIT_SIGNING_KEY", "AKIRA_SESSION_SECRET"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[FlakyBackend, None, None]:
    backend = FlakyBackend()
    backend.initialize()
    yield backend
    backend.close()


@pytest.fixture
def password_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def vault(password_hasher) -> CredentialVault:
    return CredentialVault(TEST_MASTER_KEY, password_hasher)


@pytest.fixture
def ledger(store, clock) -> AuditLedger:
    return AuditLedger(store, TEST_SIGNING_KEY.encode(), clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier, max_workers=0)


@pytest.fixture
def config() -> AkiraConfig:
    return AkiraConfig(
        database_url="memory://",
        master_key=TEST_MASTER_KEY.hex(),
        audit_signing_key=TEST_SIGNING_KEY,
        session_secret=TEST_SESSION_SECRET,
        notifier_workers=0,
    )


@pytest.fixture
def gateway(config, store, notifier, clock, password_hasher) -> Generator[AccessGateway, None, None]:
    gw = create_gateway(
        config=config,
        store=store,
        notifier=notifier,
        clock=clock,
        password_hasher=password_hasher,
    )
    yield gw
    gw.close()


@pytest.fixture
def make_identity(store, vault, clock) -> Callable[..., Identity]:
    """Insert an identity straight into the store, bypassing registration."""

    def _make(email: str = "user@example.com", role: Role = Role.NEWBIE, display_name: str = "",
              password: str = TEST_PASSWORD) -> Identity:
        now = clock.now()
        identity = Identity(
            id=generate_random_id("idn", 12),
            display_name=display_name or email.split("@")[0],
            email=email,
            credential_hash=vault.hash_password(password),
            role=role,
            created_at=now,
            updated_at=now,
        )
        store.insert_identity(identity)
        return identity

    return _make


@pytest.fixture
def admin(make_identity) -> Identity:
    return make_identity("admin@example.com", Role.ADMIN, "Admin User")


@pytest.fixture
def developer(make_identity) -> Identity:
    return make_identity("dev@example.com", Role.DEVELOPER, "Dev User")


@pytest.fixture
def auditor(make_identity) -> Identity:
    return make_identity("auditor@example.com", Role.AUDITOR, "Audit User")


@pytest.fixture
def newbie(make_identity) -> Identity:
    return make_identity("newbie@example.com", Role.NEWBIE, "New User")


def sent_code(notifier: RecordingNotifier, email: str) -> str:
    """The one-time code in the latest message to email."""
    message = notifier.last_to(email)
    assert message is not None, f"no message sent to {email}"
    match = CODE_IN_BODY.search(message.body)
    assert match is not None
    return match.group(1)


def wrong_code(code: str) -> str:
    # Issued codes are always >= 100000
    return "000000" if code != "000000" else "111111"
