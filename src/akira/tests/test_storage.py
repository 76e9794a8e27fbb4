"""
Tests for Storage Backends

Tests cover:
- Identity, API key, challenge, audit and access request stores
- Compare-and-swap primitives
- Audit log immutability, including SQLite triggers
- Schema creation and health checks
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from akira.core.models import (
    AccessRequest,
    AccessRequestStatus,
    ApiKey,
    AuditAction,
    AuditEntry,
    Identity,
    PendingChallenge,
)
from akira.core.policy import Role
from akira.errors import DependencyUnavailable, ImmutabilityViolation
from akira.storage import (
    AuditQuery,
    DuplicateError,
    InMemoryBackend,
    NotFoundError,
    SQLiteBackend,
    StorageConfig,
    StorageError,
    create_storage_backend,
    store_guard,
)

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryBackend()
    else:
        store = SQLiteBackend(str(tmp_path / "akira.db"), pool_size=2)
    store.initialize()
    yield store
    store.close()


def make_identity(identity_id="idn_1", email="a@example.com", role=Role.NEWBIE):
    return Identity(
        id=identity_id,
        display_name=identity_id,
        email=email,
        credential_hash="$argon2id$fake",
        role=role,
        created_at=NOW,
        updated_at=NOW,
    )


def make_key(key_id="key_1", owner_id="idn_1", fingerprint="f" * 64):
    return ApiKey(
        id=key_id,
        owner_id=owner_id,
        name=f"name-{key_id}",
        cipher_text="ab" * 20,
        iv="00" * 12,
        fingerprint=fingerprint,
        scopes=["read:data"],
        expires_at=NOW + timedelta(days=30),
        created_at=NOW,
    )


def make_entry(entry_id="aud_1", actor_id="idn_1", action=AuditAction.LOGIN_FAILED, timestamp=NOW):
    return AuditEntry(
        entry_id=entry_id,
        action=action,
        actor_id=actor_id,
        actor_display="A",
        ip_address=None,
        timestamp=timestamp,
        details={"email": "a@example.com", "reason": "invalid_credentials"},
        integrity_signature="sig",
    )


class TestIdentityStore:
    """Identities."""

    def test_insert_and_find(self, backend):
        backend.insert_identity(make_identity())
        assert backend.find_identity("idn_1") == make_identity()
        assert backend.find_identity_by_email("a@example.com").id == "idn_1"
        assert backend.find_identity("idn_missing") is None

    def test_email_unique(self, backend):
        backend.insert_identity(make_identity())
        with pytest.raises(DuplicateError):
            backend.insert_identity(make_identity("idn_2"))

    def test_update(self, backend):
        backend.insert_identity(make_identity())
        updated = make_identity(role=Role.DEVELOPER)
        backend.update_identity(updated)
        assert backend.find_identity("idn_1").role == Role.DEVELOPER

    def test_update_missing(self, backend):
        with pytest.raises(NotFoundError):
            backend.update_identity(make_identity())

    def test_delete_cascades(self, backend):
        """Deleting an identity removes its keys and pending challenge."""
        backend.insert_identity(make_identity())
        backend.insert_identity(make_identity("idn_2", "b@example.com"))
        backend.insert_api_key(make_key("key_1", "idn_1", "1" * 64))
        backend.insert_api_key(make_key("key_2", "idn_1", "2" * 64))
        backend.insert_api_key(make_key("key_3", "idn_2", "3" * 64))
        backend.put_challenge(PendingChallenge("a@example.com", "chl_1", "123456", NOW, NOW))

        assert backend.delete_identity("idn_1") == 2
        assert backend.find_identity("idn_1") is None
        assert backend.list_api_keys("idn_1") == []
        assert backend.get_challenge("a@example.com") is None
        assert [k.id for k in backend.list_api_keys("idn_2")] == ["key_3"]

    def test_delete_missing(self, backend):
        with pytest.raises(NotFoundError):
            backend.delete_identity("idn_missing")

    def test_list_and_count(self, backend):
        for i in range(3):
            backend.insert_identity(make_identity(f"idn_{i}", f"{i}@example.com", Role.ADMIN if i == 0 else Role.NEWBIE))
        assert backend.count_identities() == 3
        assert len(backend.list_identities(limit=2)) == 2
        assert len(backend.list_identities(limit=10, offset=2)) == 1
        assert [i.id for i in backend.list_identities_by_role("Admin")] == ["idn_0"]


class TestApiKeyStore:
    """API keys."""

    @pytest.fixture(autouse=True)
    def owner(self, backend):
        backend.insert_identity(make_identity())

    def test_insert_and_lookup(self, backend):
        backend.insert_api_key(make_key())
        assert backend.find_api_key("key_1") == make_key()
        assert backend.find_api_key_by_fingerprint("f" * 64).id == "key_1"
        assert backend.find_api_key_by_fingerprint("0" * 64) is None

    def test_fingerprint_unique(self, backend):
        backend.insert_api_key(make_key())
        with pytest.raises(DuplicateError):
            backend.insert_api_key(make_key("key_2"))

    def test_swap_requires_expected_fingerprint(self, backend):
        """The swap only applies against the fingerprint the caller read."""
        backend.insert_api_key(make_key())
        later = NOW + timedelta(days=1)

        assert not backend.swap_api_key_secret("key_1", "0" * 64, "cd", "11" * 12, "9" * 64, later, later)
        assert backend.swap_api_key_secret("key_1", "f" * 64, "cd", "11" * 12, "9" * 64, later, later)
        assert not backend.swap_api_key_secret("key_1", "f" * 64, "ef", "22" * 12, "8" * 64, later, later)

        key = backend.find_api_key("key_1")
        assert key.fingerprint == "9" * 64
        assert key.cipher_text == "cd"
        assert key.rotated_at == later
        assert backend.find_api_key_by_fingerprint("f" * 64) is None

    def test_swap_missing_key(self, backend):
        assert not backend.swap_api_key_secret("key_missing", "f" * 64, "cd", "11" * 12, "9" * 64, NOW, None)

    def test_delete(self, backend):
        backend.insert_api_key(make_key())
        assert backend.delete_api_key("key_1")
        assert not backend.delete_api_key("key_1")
        assert backend.find_api_key_by_fingerprint("f" * 64) is None

    def test_list_all(self, backend):
        backend.insert_api_key(make_key("key_1", fingerprint="1" * 64))
        backend.insert_api_key(make_key("key_2", fingerprint="2" * 64))
        assert {k.id for k in backend.list_all_api_keys()} == {"key_1", "key_2"}

    def test_owner_must_exist(self, backend):
        """Both backends refuse keys for an unknown identity."""
        with pytest.raises(NotFoundError):
            backend.insert_api_key(make_key(owner_id="idn_missing"))
        assert backend.find_api_key("key_1") is None


class TestChallengeStore:
    """Pending challenges."""

    def challenge(self, challenge_id="chl_1", expires_at=NOW + timedelta(minutes=5)):
        return PendingChallenge("a@example.com", challenge_id, "123456", expires_at, NOW)

    def test_put_overwrites(self, backend):
        """A later challenge for the same email replaces the earlier one."""
        backend.put_challenge(self.challenge("chl_1"))
        backend.put_challenge(self.challenge("chl_2"))
        assert backend.get_challenge("a@example.com").challenge_id == "chl_2"

    def test_reservation_is_bound_to_challenge(self, backend):
        backend.put_challenge(self.challenge("chl_1"))
        assert backend.reserve_challenge_attempt("a@example.com", "chl_1", 5) == 1
        assert backend.reserve_challenge_attempt("a@example.com", "chl_1", 5) == 2
        assert backend.reserve_challenge_attempt("a@example.com", "chl_other", 5) is None
        assert backend.reserve_challenge_attempt("b@example.com", "chl_1", 5) is None
        assert backend.get_challenge("a@example.com").attempt_count == 2

    def test_reservation_stops_at_ceiling(self, backend):
        """The count never passes the ceiling, however many callers ask."""
        backend.put_challenge(self.challenge("chl_1"))
        granted = [backend.reserve_challenge_attempt("a@example.com", "chl_1", 5) for _ in range(8)]
        assert granted == [1, 2, 3, 4, 5, None, None, None]
        assert backend.get_challenge("a@example.com").attempt_count == 5

    def test_delete_checks_challenge_id(self, backend):
        backend.put_challenge(self.challenge("chl_1"))
        assert not backend.delete_challenge("a@example.com", "chl_other")
        assert backend.delete_challenge("a@example.com", "chl_1")
        assert not backend.delete_challenge("a@example.com")

    def test_purge_expired(self, backend):
        backend.put_challenge(self.challenge(expires_at=NOW - timedelta(seconds=1)))
        assert backend.purge_expired_challenges(NOW) == 1
        assert backend.get_challenge("a@example.com") is None


class TestAuditLogStorage:
    """Append-only audit storage."""

    def test_insert_and_get(self, backend):
        backend.insert_audit_entry(make_entry())
        assert backend.get_audit_entry("aud_1") == make_entry()
        assert backend.count_audit_entries() == 1

    def test_duplicate_id(self, backend):
        backend.insert_audit_entry(make_entry())
        with pytest.raises(DuplicateError):
            backend.insert_audit_entry(make_entry())

    def test_query_order_and_filters(self, backend):
        backend.insert_audit_entry(make_entry("aud_1", timestamp=NOW))
        backend.insert_audit_entry(make_entry("aud_2", actor_id="idn_2", timestamp=NOW))
        backend.insert_audit_entry(make_entry("aud_3", timestamp=NOW + timedelta(seconds=1)))

        newest = backend.query_audit_entries(AuditQuery())
        assert [e.entry_id for e in newest] == ["aud_3", "aud_2", "aud_1"]

        oldest = backend.query_audit_entries(AuditQuery(newest_first=False, limit=2))
        assert [e.entry_id for e in oldest] == ["aud_1", "aud_2"]

        mine = backend.query_audit_entries(AuditQuery(actor_id="idn_1"))
        assert [e.entry_id for e in mine] == ["aud_3", "aud_1"]

        everything = backend.query_audit_entries(AuditQuery(limit=None, offset=1))
        assert len(everything) == 2

    def test_update_and_delete_refused(self, backend):
        backend.insert_audit_entry(make_entry())
        with pytest.raises(ImmutabilityViolation):
            backend.update_audit_entry("aud_1", actor_display="Mallory")
        with pytest.raises(ImmutabilityViolation):
            backend.delete_audit_entry("aud_1")
        assert backend.get_audit_entry("aud_1") == make_entry()


class TestAccessRequestStore:
    """Access requests."""

    @pytest.fixture(autouse=True)
    def requester(self, backend):
        backend.insert_identity(make_identity())

    def request(self, request_id="req_1"):
        return AccessRequest(request_id, "idn_1", Role.DEVELOPER, "I need to issue keys", NOW)

    def test_insert_and_find_pending(self, backend):
        backend.insert_access_request(self.request())
        assert backend.find_access_request("req_1") == self.request()
        assert backend.find_pending_request_for("idn_1").id == "req_1"
        assert [r.id for r in backend.list_access_requests(AccessRequestStatus.PENDING)] == ["req_1"]

    def test_requester_must_exist(self, backend):
        orphan = AccessRequest("req_2", "idn_missing", Role.DEVELOPER, "I need to issue keys", NOW)
        with pytest.raises(NotFoundError):
            backend.insert_access_request(orphan)

    def test_transition_is_compare_and_swap(self, backend):
        """Only one decision can be applied."""
        backend.insert_access_request(self.request())
        pending, approved, rejected = (
            AccessRequestStatus.PENDING, AccessRequestStatus.APPROVED, AccessRequestStatus.REJECTED,
        )

        assert backend.transition_access_request("req_1", pending, approved, "idn_admin", NOW)
        assert not backend.transition_access_request("req_1", pending, rejected, "idn_admin", NOW)

        decided = backend.find_access_request("req_1")
        assert decided.status == approved
        assert decided.processed_by == "idn_admin"
        assert decided.processed_at == NOW
        assert backend.find_pending_request_for("idn_1") is None

    def test_transition_back_clears_processing(self, backend):
        backend.insert_access_request(self.request())
        backend.transition_access_request(
            "req_1", AccessRequestStatus.PENDING, AccessRequestStatus.APPROVED, "idn_admin", NOW,
        )
        assert backend.transition_access_request(
            "req_1", AccessRequestStatus.APPROVED, AccessRequestStatus.PENDING, None, None,
        )
        restored = backend.find_access_request("req_1")
        assert restored.processed_by is None
        assert restored.processed_at is None


class TestSQLiteSpecifics:
    """Behavior only the SQLite backend has."""

    @pytest.fixture
    def sqlite_backend(self, tmp_path):
        store = SQLiteBackend(str(tmp_path / "akira.db"), pool_size=2)
        store.initialize()
        yield store
        store.close()

    def test_triggers_block_raw_update(self, sqlite_backend):
        """Even raw SQL cannot change an audit row."""
        sqlite_backend.insert_audit_entry(make_entry())
        with sqlite_backend.pool.get_connection() as conn:
            with pytest.raises(sqlite3.DatabaseError):
                conn.execute("UPDATE audit_log SET actor_display = 'Mallory' WHERE entry_id = 'aud_1'")
            with pytest.raises(sqlite3.DatabaseError):
                conn.execute("DELETE FROM audit_log WHERE entry_id = 'aud_1'")
        assert sqlite_backend.get_audit_entry("aud_1").actor_display == "A"

    def test_schema_survives_reopen(self, tmp_path):
        path = str(tmp_path / "akira.db")
        first = SQLiteBackend(path)
        first.initialize()
        first.insert_identity(make_identity())
        first.close()

        second = SQLiteBackend(path)
        second.initialize()
        assert second.find_identity("idn_1") == make_identity()
        second.close()

    def test_in_memory_pools_are_isolated(self):
        first = SQLiteBackend(":memory:", pool_size=2)
        second = SQLiteBackend(":memory:", pool_size=2)
        first.initialize()
        second.initialize()
        first.insert_identity(make_identity())
        assert second.find_identity("idn_1") is None
        first.close()
        second.close()

    def test_health_check(self, sqlite_backend):
        healthy, message = sqlite_backend.health_check()
        assert healthy, message


class TestFactory:
    """Backend construction."""

    def test_from_url(self):
        assert StorageConfig.from_url("memory://").backend_type == "memory"
        config = StorageConfig.from_url("sqlite:///var/lib/akira.db")
        assert config.backend_type == "sqlite"
        assert config.connection_string == "var/lib/akira.db"

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            StorageConfig.from_url("postgres://db")

    def test_create_memory_backend(self):
        backend = create_storage_backend(StorageConfig.from_url("memory://"))
        assert isinstance(backend, InMemoryBackend)
        assert backend.health_check()[0]

    def test_store_guard(self):
        """Storage failures reach services as DependencyUnavailable."""
        with pytest.raises(DependencyUnavailable):
            with store_guard():
                raise StorageError("disk full")
