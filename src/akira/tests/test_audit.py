"""
Tests for the Audit Ledger

Tests cover:
- Signing and verification of entries
- Typed detail payloads
- Ordering and filtering
- Immutability
- Full-ledger scans and signed exports
"""

import csv
import io
import json
from dataclasses import replace

import pytest

from akira.core.audit import (
    SYSTEM_ACTOR,
    AccessDenied,
    AuditDetails,
    AuditLedger,
    ExportFormat,
    KeyIssued,
    LoginFailed,
    UserRegistered,
    parse_details,
)
from akira.core.models import AuditAction
from akira.errors import DependencyUnavailable, ImmutabilityViolation, ValidationError


class TestAppend:
    """Appending and verifying entries."""

    def test_append_signs_entry(self, ledger):
        """A new entry carries a signature that verifies."""
        entry = ledger.append(UserRegistered(email="a@example.com", role="Newbie"), actor_id="idn_1")

        assert entry.action == AuditAction.USER_REGISTERED
        assert entry.integrity_signature
        assert ledger.verify(entry)
        assert ledger.get(entry.entry_id) == entry

    def test_defaults_to_system_actor(self, ledger):
        """Entries without an actor are attributed to the system."""
        entry = ledger.append(AccessDenied(reason="unknown_caller"))
        assert entry.actor_id is None
        assert entry.actor_display == SYSTEM_ACTOR

    def test_action_comes_from_payload_type(self, ledger):
        """The payload class decides the action tag."""
        entry = ledger.append(LoginFailed(email="a@example.com"))
        assert entry.action == AuditAction.LOGIN_FAILED
        assert entry.details == {"email": "a@example.com", "reason": "invalid_credentials"}

    def test_rejects_untyped_payload(self, ledger, store):
        """Only registered payload classes can be appended."""
        with pytest.raises(ValidationError):
            ledger.append(AuditDetails())
        with pytest.raises(ValidationError):
            ledger.append({"action": "LOGIN_SUCCESS"})
        assert store.count_audit_entries() == 0

    def test_timestamp_from_clock(self, ledger, clock):
        """Entries are stamped with the injected clock."""
        entry = ledger.append(AccessDenied(reason="x"))
        assert entry.timestamp == clock.now()

    def test_storage_failure_surfaces(self, ledger, store):
        """A failed write is reported as DependencyUnavailable."""
        store.fail_audit_writes = True
        with pytest.raises(DependencyUnavailable):
            ledger.append(AccessDenied(reason="x"))

    def test_empty_signing_key_rejected(self, store):
        with pytest.raises(ValueError):
            AuditLedger(store, b"")


class TestTamperDetection:
    """Any change to a signed field is detected."""

    def test_modified_details_fail(self, ledger):
        """Editing the payload breaks the signature."""
        entry = ledger.append(KeyIssued(key_id="key_1", key_name="ci", scopes=["read:data"]))
        forged = replace(entry, details={**entry.details, "scopes": ["delete:data"]})
        assert not ledger.verify(forged)

    @pytest.mark.parametrize("change", [
        {"actor_id": "idn_other"},
        {"actor_display": "Someone Else"},
        {"ip_address": "10.0.0.1"},
        {"action": AuditAction.LOGIN_SUCCESS},
    ])
    def test_modified_metadata_fails(self, ledger, change):
        """Actor, address and action are all covered by the signature."""
        entry = ledger.append(LoginFailed(email="a@example.com"), actor_id="idn_1", ip_address="127.0.0.1")
        assert not ledger.verify(replace(entry, **change))

    def test_other_signing_key_fails(self, ledger, store):
        """A ledger with a different key rejects the entry."""
        entry = ledger.append(AccessDenied(reason="x"))
        other = AuditLedger(store, b"another-signing-key-0123456789abcdef")
        assert not other.verify(entry)


class TestImmutability:
    """Entries cannot be changed through the store."""

    def test_update_raises(self, ledger, store):
        entry = ledger.append(AccessDenied(reason="x"))
        with pytest.raises(ImmutabilityViolation) as exc_info:
            store.update_audit_entry(entry.entry_id, actor_display="Mallory")
        assert exc_info.value.context["entry_id"] == entry.entry_id

    def test_delete_raises(self, ledger, store):
        entry = ledger.append(AccessDenied(reason="x"))
        with pytest.raises(ImmutabilityViolation):
            store.delete_audit_entry(entry.entry_id)
        assert store.get_audit_entry(entry.entry_id) is not None

    def test_details_are_not_shared_with_callers(self, ledger, store):
        """Mutating a returned entry's details never reaches the stored copy."""
        entry = ledger.append(LoginFailed(email="a@b.co"))
        entry.details["email"] = "evil@x.com"

        fetched = store.get_audit_entry(entry.entry_id)
        assert fetched.details["email"] == "a@b.co"
        fetched.details["email"] = "evil@x.com"

        [queried] = ledger.query()
        assert queried.details["email"] == "a@b.co"
        assert ledger.verify(queried)
        assert ledger.verify_all().is_intact

    def test_entries_are_frozen(self, ledger):
        entry = ledger.append(AccessDenied(reason="x"))
        with pytest.raises(AttributeError):
            entry.actor_display = "Mallory"


class TestQuery:
    """Ordering and filtering."""

    def test_newest_first_with_stable_ties(self, ledger):
        """Entries sharing a timestamp keep insertion order."""
        first = ledger.append(AccessDenied(reason="1"))
        second = ledger.append(AccessDenied(reason="2"))
        third = ledger.append(AccessDenied(reason="3"))

        newest = ledger.query()
        assert [e.entry_id for e in newest] == [third.entry_id, second.entry_id, first.entry_id]

        oldest = ledger.query(newest_first=False)
        assert [e.entry_id for e in oldest] == [first.entry_id, second.entry_id, third.entry_id]

    def test_orders_by_timestamp(self, ledger, clock):
        """Later timestamps sort first by default."""
        early = ledger.append(AccessDenied(reason="early"))
        clock.advance(minutes=5)
        late = ledger.append(AccessDenied(reason="late"))
        assert [e.entry_id for e in ledger.query()] == [late.entry_id, early.entry_id]

    def test_filter_by_actor_and_action(self, ledger):
        """Actor and action filters combine."""
        ledger.append(LoginFailed(email="a@example.com"), actor_id="idn_a")
        ledger.append(AccessDenied(reason="x"), actor_id="idn_a")
        ledger.append(LoginFailed(email="b@example.com"), actor_id="idn_b")

        assert len(ledger.query(actor_id="idn_a")) == 2
        only = ledger.query(actor_id="idn_a", action=AuditAction.LOGIN_FAILED)
        assert len(only) == 1
        assert only[0].details["email"] == "a@example.com"

    def test_filter_by_time_window(self, ledger, clock):
        ledger.append(AccessDenied(reason="before"))
        clock.advance(hours=1)
        start = clock.now()
        ledger.append(AccessDenied(reason="inside"))
        clock.advance(hours=1)
        ledger.append(AccessDenied(reason="after"))

        window = ledger.query(since=start, until=start)
        assert [e.details["reason"] for e in window] == ["inside"]

    def test_limit_and_offset(self, ledger):
        for i in range(5):
            ledger.append(AccessDenied(reason=str(i)))
        page = ledger.query(newest_first=False, limit=2, offset=2)
        assert [e.details["reason"] for e in page] == ["2", "3"]
        assert len(ledger.query(limit=None)) == 5


class TestVerifyAll:
    """Full-ledger scans."""

    def test_intact_ledger(self, ledger):
        for i in range(7):
            ledger.append(AccessDenied(reason=str(i)))
        result = ledger.verify_all(batch_size=3)
        assert result.total == 7
        assert result.is_intact
        assert result.to_dict() == {"total": 7, "corrupted": [], "is_intact": True}

    def test_reports_forged_rows(self, ledger, store):
        """A row written around the ledger is flagged."""
        genuine = ledger.append(AccessDenied(reason="x"))
        forged = replace(genuine, entry_id="aud_forged", details={"reason": "y"})
        store.insert_audit_entry(forged)

        result = ledger.verify_all()
        assert result.total == 2
        assert not result.is_intact
        assert result.corrupted == ["aud_forged"]


class TestDetails:
    """Typed payload reconstruction."""

    def test_parse_details(self, ledger):
        entry = ledger.append(KeyIssued(key_id="key_1", key_name="ci", scopes=["read:data"]))
        details = parse_details(entry)
        assert isinstance(details, KeyIssued)
        assert details.scopes == ["read:data"]


class TestExport:
    """Signed export bundles."""

    @pytest.fixture
    def bundle(self, ledger):
        ledger.append(UserRegistered(email="a@example.com", role="Newbie"), actor_id="idn_a")
        ledger.append(LoginFailed(email="a@example.com"), actor_id="idn_a", ip_address="127.0.0.1")
        return ledger.export(ledger.query(newest_first=False), exported_by="idn_admin")

    def test_bundle_verifies(self, ledger, bundle):
        assert bundle.integrity_signature
        assert ledger.verify_export(bundle)

    def test_tampered_bundle_fails(self, ledger, bundle):
        """Dropping an entry breaks the export signature."""
        bundle.entries = bundle.entries[1:]
        assert not ledger.verify_export(bundle)

    def test_json(self, bundle):
        data = json.loads(bundle.render(ExportFormat.JSON))
        assert data["entry_count"] == 2
        assert data["exported_by"] == "idn_admin"
        assert data["entries"][0]["action"] == "USER_REGISTERED"

    def test_json_lines(self, bundle):
        """One header line, then one line per entry."""
        lines = bundle.render(ExportFormat.JSON_LINES).strip().split("\n")
        assert len(lines) == 3
        assert json.loads(lines[0])["export_id"] == bundle.export_id
        assert json.loads(lines[2])["action"] == "LOGIN_FAILED"

    def test_csv(self, bundle):
        rows = list(csv.reader(io.StringIO(bundle.render(ExportFormat.CSV))))
        assert rows[0][0] == "entry_id"
        assert len(rows) == 3
        assert rows[2][5] == "127.0.0.1"
