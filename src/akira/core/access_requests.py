"""
Self-service role elevation.

An identity asks for a role with a written reason; an administrator approves
or rejects it. Approval is the only path besides a direct admin role change
through which a role is raised, and the PENDING -> decided transition is a
compare-and-swap so a request is decided exactly once.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Union

from akira.core.audit import (
    SYSTEM_ACTOR,
    AccessRequestApproved,
    AccessRequestRejected,
    AccessRequestSubmitted,
    AuditLedger,
)
from akira.core.clock import Clock, SystemClock
from akira.core.crypto import generate_random_id
from akira.core.models import AccessRequest, AccessRequestStatus
from akira.core.notifier import NotificationDispatcher
from akira.core.policy import Role
from akira.errors import DependencyUnavailable, NotFound, ValidationError
from akira.monitoring.logging import get_logger
from akira.storage.base import GatewayStore, store_guard

logger = get_logger(__name__)

MIN_REASON_LENGTH = 10
MAX_REASON_LENGTH = 1000


class AccessRequestService:
    """Submits and decides role elevation requests."""

    def __init__(
        self,
        store: GatewayStore,
        ledger: AuditLedger,
        dispatcher: NotificationDispatcher,
        clock: Optional[Clock] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()

    def submit(
        self,
        identity_id: str,
        requested_role: Union[Role, str],
        reason: str,
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> AccessRequest:
        """
        File a request. One PENDING request per identity.

        Raises:
            ValidationError: bad role or reason, same role, or one already pending
            NotFound: unknown identity
        """
        role = Role.parse(requested_role)
        if not isinstance(reason, str) or len(reason.strip()) < MIN_REASON_LENGTH:
            raise ValidationError(f"Reason must be at least {MIN_REASON_LENGTH} characters")
        reason = reason.strip()
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"Reason must be at most {MAX_REASON_LENGTH} characters")

        with store_guard():
            identity = self._store.find_identity(identity_id)
            if identity is None:
                raise NotFound("Identity not found")
            if identity.role == role:
                raise ValidationError(f"You already have the {role.value} role")
            if self._store.find_pending_request_for(identity_id) is not None:
                raise ValidationError("You already have a pending access request")

            request = AccessRequest(
                id=generate_random_id("req", 12),
                identity_id=identity_id,
                requested_role=role,
                reason=reason,
                created_at=self._clock.now(),
            )
            self._store.insert_access_request(request)

        try:
            self._ledger.append(
                AccessRequestSubmitted(request_id=request.id, requested_role=role.value),
                actor_id=identity_id,
                actor_display=actor_display,
                ip_address=ip_address,
            )
        except DependencyUnavailable:
            # No delete for requests; a rejected request cannot be acted on
            with store_guard():
                self._store.transition_access_request(
                    request.id, AccessRequestStatus.PENDING, AccessRequestStatus.REJECTED,
                    SYSTEM_ACTOR, self._clock.now(),
                )
            raise

        self._notify_admins(identity.display_name, role)
        logger.info("access_request_submitted", request_id=request.id, requested_role=role.value)
        return request

    def _notify_admins(self, requester: str, role: Role) -> None:
        """Best effort: the request is already committed and audited."""
        try:
            with store_guard():
                admins = self._store.list_identities_by_role(Role.ADMIN.value)
        except DependencyUnavailable as e:
            logger.error("access_request_notify_failed", requested_role=role.value, detail=e.message)
            return
        for admin in admins:
            self._dispatcher.dispatch(
                admin.email,
                "New AKIRA access request",
                f"{requester} has requested the {role.value} role.",
            )

    def list_pending(self) -> List[Dict[str, Any]]:
        """Pending requests, newest first, with the requester's summary."""
        with store_guard():
            requests = self._store.list_access_requests(AccessRequestStatus.PENDING)
            result = []
            for request in requests:
                data = request.to_dict()
                identity = self._store.find_identity(request.identity_id)
                data["identity"] = identity.summary() if identity else None
                result.append(data)
        return result

    def list_for(self, identity_id: str) -> List[Dict[str, Any]]:
        with store_guard():
            requests = self._store.list_access_requests()
        return [r.to_dict() for r in requests if r.identity_id == identity_id]

    def process(
        self,
        actor_id: str,
        request_id: str,
        approve: bool,
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> AccessRequest:
        """
        Approve or reject a pending request. Approval applies the role.

        Raises:
            NotFound: unknown request, or the requester no longer exists
            ValidationError: the request was already processed
        """
        new_status = AccessRequestStatus.APPROVED if approve else AccessRequestStatus.REJECTED
        now = self._clock.now()

        with store_guard():
            request = self._store.find_access_request(request_id)
            if request is None:
                raise NotFound("Access request not found")
            if request.status != AccessRequestStatus.PENDING:
                raise ValidationError("This request has already been processed")

            identity = self._store.find_identity(request.identity_id)
            if identity is None:
                raise NotFound("Requesting identity no longer exists")

            if not self._store.transition_access_request(
                request_id, AccessRequestStatus.PENDING, new_status, actor_id, now,
            ):
                raise ValidationError("This request has already been processed")

            if approve:
                self._store.update_identity(replace(identity, role=request.requested_role, updated_at=now))

        if approve:
            details = AccessRequestApproved(
                request_id=request_id,
                identity_id=identity.id,
                new_role=request.requested_role.value,
            )
        else:
            details = AccessRequestRejected(request_id=request_id, identity_id=identity.id)

        try:
            self._ledger.append(details, actor_id=actor_id, actor_display=actor_display, ip_address=ip_address)
        except DependencyUnavailable:
            with store_guard():
                if approve:
                    self._store.update_identity(identity)
                self._store.transition_access_request(
                    request_id, new_status, AccessRequestStatus.PENDING, None, None,
                )
            raise

        logger.info("access_request_processed", request_id=request_id, status=new_status.value)
        return replace(request, status=new_status, processed_by=actor_id, processed_at=now)
