"""
Access Policy

Stateless, table-driven authorization: a role either holds a capability or it
does not. Roles come from a fixed enumeration; nothing outside this table can
grant a capability.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from akira.errors import Forbidden, ValidationError


class Role(str, Enum):
    """Operator roles."""
    ADMIN = "Admin"
    DEVELOPER = "Developer"
    AUDITOR = "Auditor"
    NEWBIE = "Newbie"

    @classmethod
    def parse(cls, value: Union[str, "Role"]) -> "Role":
        """Accept only the fixed enumeration (case-insensitive names or values)."""
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            for role in cls:
                if value.lower() in (role.value.lower(), role.name.lower()):
                    return role
        raise ValidationError(f"Unknown role: {value!r}")


class Capability(str, Enum):
    """Actions gated by role."""
    KEYS_ISSUE = "keys:issue"
    KEYS_MANAGE = "keys:manage"
    KEYS_REENCRYPT = "keys:reencrypt"

    AUDIT_READ_OWN = "audit:read_own"
    AUDIT_EXPORT = "audit:export"
    AUDIT_VERIFY = "audit:verify"

    USERS_READ = "users:read"
    USERS_UPDATE_ROLE = "users:update_role"
    USERS_DELETE = "users:delete"

    ACCESS_REQUEST = "access:request"
    ACCESS_PROCESS = "access:process"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset({
        Capability.KEYS_ISSUE,
        Capability.KEYS_MANAGE,
        Capability.KEYS_REENCRYPT,
        Capability.AUDIT_READ_OWN,
        Capability.AUDIT_EXPORT,
        Capability.AUDIT_VERIFY,
        Capability.USERS_READ,
        Capability.USERS_UPDATE_ROLE,
        Capability.USERS_DELETE,
        Capability.ACCESS_PROCESS,
    }),
    Role.DEVELOPER: frozenset({
        Capability.KEYS_ISSUE,
        Capability.KEYS_MANAGE,
        Capability.AUDIT_READ_OWN,
        Capability.ACCESS_REQUEST,
    }),
    Role.AUDITOR: frozenset({
        Capability.AUDIT_READ_OWN,
        Capability.AUDIT_EXPORT,
        Capability.AUDIT_VERIFY,
        Capability.ACCESS_REQUEST,
    }),
    Role.NEWBIE: frozenset({
        Capability.AUDIT_READ_OWN,
        Capability.ACCESS_REQUEST,
    }),
}


class AccessPolicy:
    """Role x capability lookup."""

    def __init__(self, table: Optional[Dict[Role, FrozenSet[Capability]]] = None):
        self._table = table if table is not None else ROLE_CAPABILITIES

    def can_perform(self, role: Union[Role, str], capability: Capability) -> bool:
        try:
            role = Role.parse(role)
        except ValidationError:
            return False
        return capability in self._table.get(role, frozenset())

    def require(self, role: Union[Role, str], capability: Capability) -> None:
        """Raise Forbidden unless the role holds the capability."""
        if not self.can_perform(role, capability):
            raise Forbidden(
                f"Role '{getattr(role, 'value', role)}' may not perform '{capability.value}'",
                capability=capability.value,
            )

    def capabilities(self, role: Union[Role, str]) -> FrozenSet[Capability]:
        return self._table.get(Role.parse(role), frozenset())
