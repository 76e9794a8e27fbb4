"""
Tests for Access Requests

Tests cover:
- Submission rules
- Admin notification, which never undoes a committed request
- Approval and rejection
- Exactly-once processing
- Rollback when the ledger is unavailable
"""

import pytest

from akira.core.access_requests import AccessRequestService
from akira.core.models import AccessRequestStatus, AuditAction
from akira.core.notifier import NotificationDispatcher
from akira.core.policy import Role
from akira.errors import DependencyUnavailable, NotFound, ValidationError
from akira.storage.base import StorageError

REASON = "I need to issue API keys for the CI pipeline"


@pytest.fixture
def service(store, ledger, dispatcher, clock):
    return AccessRequestService(store, ledger, dispatcher, clock)


class TestSubmit:
    """Filing requests."""

    def test_submit(self, service, store, ledger, newbie):
        request = service.submit(newbie.id, "Developer", REASON, newbie.display_name)

        assert request.status == AccessRequestStatus.PENDING
        assert request.requested_role == Role.DEVELOPER
        assert store.find_pending_request_for(newbie.id).id == request.id

        entry = ledger.query(action=AuditAction.ACCESS_REQUEST_SUBMITTED)[0]
        assert entry.actor_id == newbie.id
        assert entry.details == {"request_id": request.id, "requested_role": "Developer"}

    def test_admins_notified(self, service, notifier, admin, newbie):
        service.submit(newbie.id, Role.DEVELOPER, REASON)
        message = notifier.last_to("admin@example.com")
        assert message is not None
        assert message.subject == "New AKIRA access request"
        assert "Developer" in message.body

    @pytest.mark.parametrize("reason", ["", "too short", None, "x" * 1001])
    def test_reason_validated(self, service, newbie, reason):
        with pytest.raises(ValidationError):
            service.submit(newbie.id, Role.DEVELOPER, reason)

    def test_unknown_role(self, service, newbie):
        with pytest.raises(ValidationError):
            service.submit(newbie.id, "Superuser", REASON)

    def test_admin_lookup_failure_keeps_request(self, service, store, ledger, newbie, monkeypatch):
        """The request stands when admins cannot be looked up for notification."""
        def unavailable(role):
            raise StorageError("identities table unavailable")

        monkeypatch.setattr(store, "list_identities_by_role", unavailable)
        request = service.submit(newbie.id, Role.DEVELOPER, REASON)

        assert store.find_access_request(request.id).status == AccessRequestStatus.PENDING
        assert ledger.query(action=AuditAction.ACCESS_REQUEST_SUBMITTED)

    def test_closed_dispatcher_keeps_request(self, store, ledger, clock, notifier, admin, newbie):
        pooled = NotificationDispatcher(notifier, max_workers=1)
        pooled.shutdown()
        service = AccessRequestService(store, ledger, pooled, clock)

        request = service.submit(newbie.id, Role.DEVELOPER, REASON)
        assert store.find_pending_request_for(newbie.id).id == request.id

    def test_current_role_rejected(self, service, developer):
        with pytest.raises(ValidationError):
            service.submit(developer.id, Role.DEVELOPER, REASON)

    def test_one_pending_per_identity(self, service, newbie):
        service.submit(newbie.id, Role.DEVELOPER, REASON)
        with pytest.raises(ValidationError):
            service.submit(newbie.id, Role.AUDITOR, REASON)

    def test_unknown_identity(self, service):
        with pytest.raises(NotFound):
            service.submit("idn_missing", Role.DEVELOPER, REASON)

    def test_unaudited_request_is_rejected(self, service, store, newbie):
        """A request whose submission was not audited cannot be approved later."""
        store.fail_audit_writes = True
        with pytest.raises(DependencyUnavailable):
            service.submit(newbie.id, Role.DEVELOPER, REASON)

        assert store.find_pending_request_for(newbie.id) is None
        [request] = store.list_access_requests()
        assert request.status == AccessRequestStatus.REJECTED


class TestProcess:
    """Deciding requests."""

    @pytest.fixture
    def pending(self, service, newbie):
        return service.submit(newbie.id, Role.DEVELOPER, REASON)

    def test_approve_applies_role(self, service, store, ledger, admin, newbie, pending):
        decided = service.process(admin.id, pending.id, approve=True)

        assert decided.status == AccessRequestStatus.APPROVED
        assert decided.processed_by == admin.id
        assert store.find_identity(newbie.id).role == Role.DEVELOPER

        entry = ledger.query(action=AuditAction.ACCESS_REQUEST_APPROVED)[0]
        assert entry.details["new_role"] == "Developer"

    def test_reject_keeps_role(self, service, store, ledger, admin, newbie, pending):
        decided = service.process(admin.id, pending.id, approve=False)

        assert decided.status == AccessRequestStatus.REJECTED
        assert store.find_identity(newbie.id).role == Role.NEWBIE
        assert len(ledger.query(action=AuditAction.ACCESS_REQUEST_REJECTED)) == 1

    def test_processed_once(self, service, admin, pending):
        """A decided request cannot be decided again."""
        service.process(admin.id, pending.id, approve=False)
        with pytest.raises(ValidationError):
            service.process(admin.id, pending.id, approve=True)

    def test_unknown_request(self, service, admin):
        with pytest.raises(NotFound):
            service.process(admin.id, "req_missing", approve=True)

    def test_rolled_back_without_audit(self, service, store, admin, newbie, pending):
        """Approval is undone and the request is pending again."""
        store.fail_audit_writes = True
        with pytest.raises(DependencyUnavailable):
            service.process(admin.id, pending.id, approve=True)

        assert store.find_identity(newbie.id).role == Role.NEWBIE
        assert store.find_access_request(pending.id).status == AccessRequestStatus.PENDING

    def test_list_pending_includes_requester(self, service, admin, newbie, pending):
        [listed] = service.list_pending()
        assert listed["id"] == pending.id
        assert listed["identity"]["email"] == "newbie@example.com"

    def test_list_for_identity(self, service, admin, newbie, pending):
        service.process(admin.id, pending.id, approve=False)
        history = service.list_for(newbie.id)
        assert [r["status"] for r in history] == ["REJECTED"]
        assert service.list_pending() == []
