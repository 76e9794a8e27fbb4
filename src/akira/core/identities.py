"""
Administrative identity management: listing, role changes and deletion.

Roles are only ever taken from the fixed Role enumeration. An administrator
cannot change their own role or delete themselves, which keeps at least the
acting admin in place.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Union

from akira.core.audit import SYSTEM_ACTOR, AuditLedger, IdentityDeleted, RoleChanged
from akira.core.clock import Clock, SystemClock
from akira.core.models import Identity
from akira.core.policy import Role
from akira.errors import DependencyUnavailable, NotFound, ValidationError
from akira.monitoring.logging import get_logger
from akira.storage.base import GatewayStore, NotFoundError, store_guard

logger = get_logger(__name__)

MAX_PAGE_SIZE = 500


class IdentityDirectory:
    """Admin-side view of the identity store."""

    def __init__(self, store: GatewayStore, ledger: AuditLedger, clock: Optional[Clock] = None):
        self._store = store
        self._ledger = ledger
        self._clock = clock or SystemClock()

    def get(self, identity_id: str) -> Identity:
        with store_guard():
            identity = self._store.find_identity(identity_id)
        if identity is None:
            raise NotFound("Identity not found", identity_id=identity_id)
        return identity

    def list_identities(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """Identity summaries, oldest first. Credential hashes are never included."""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        with store_guard():
            identities = self._store.list_identities(limit=min(limit, MAX_PAGE_SIZE), offset=offset)
        return [i.summary() for i in identities]

    def count(self) -> int:
        with store_guard():
            return self._store.count_identities()

    def change_role(
        self,
        actor_id: str,
        target_id: str,
        new_role: Union[Role, str],
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Set another identity's role.

        Raises:
            ValidationError: unknown role, or actor_id == target_id
            NotFound: unknown target
        """
        role = Role.parse(new_role)
        if actor_id == target_id:
            raise ValidationError("You cannot change your own role")

        target = self.get(target_id)
        if target.role == role:
            return target.summary()

        updated = replace(target, role=role, updated_at=self._clock.now())
        with store_guard():
            self._store.update_identity(updated)

        try:
            self._ledger.append(
                RoleChanged(target_id=target_id, old_role=target.role.value, new_role=role.value),
                actor_id=actor_id,
                actor_display=actor_display,
                ip_address=ip_address,
            )
        except DependencyUnavailable:
            with store_guard():
                self._store.update_identity(target)
            raise

        logger.info("role_changed", target_id=target_id, old_role=target.role.value, new_role=role.value)
        return updated.summary()

    def delete_identity(
        self,
        actor_id: str,
        target_id: str,
        actor_display: str = SYSTEM_ACTOR,
        ip_address: Optional[str] = None,
    ) -> int:
        """
        Delete an identity together with every API key it owns.

        The deletion is not reversible, so the audit entry is written first;
        if the ledger is down nothing is deleted.

        Returns:
            Number of API keys removed
        """
        if actor_id == target_id:
            raise ValidationError("You cannot delete your own identity")

        target = self.get(target_id)
        with store_guard():
            keys_owned = len(self._store.list_api_keys(target_id))

        self._ledger.append(
            IdentityDeleted(target_id=target_id, email=target.email, keys_removed=keys_owned),
            actor_id=actor_id,
            actor_display=actor_display,
            ip_address=ip_address,
        )

        with store_guard():
            try:
                removed = self._store.delete_identity(target_id)
            except NotFoundError:
                raise NotFound("Identity not found", identity_id=target_id)

        logger.info("identity_deleted", target_id=target_id, keys_removed=removed)
        return removed

