"""
Error Taxonomy for AKIRA

Every failure surfaced by the gateway is one of these types. Authentication
failures are deliberately uninformative (Denied never says whether the
identity exists); lifecycle failures (Forbidden, Expired, Locked) are specific
because they do not leak identity existence.
"""

from typing import Any, Dict, Optional


class AkiraError(Exception):
    """Base class for all gateway errors."""

    code: str = "error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.code, "message": self.message}
        data.update(self.context)
        return data


class ValidationError(AkiraError):
    """Malformed input (bad email, weak password, wrong code format)."""
    code = "validation_error"


class Denied(AkiraError):
    """Authentication failed. The message is always generic."""
    code = "denied"

    def __init__(self, message: str = "Invalid credentials", **context: Any):
        super().__init__(message, **context)


class InvalidCode(Denied):
    """Wrong one-time code; carries the number of attempts left."""
    code = "invalid_code"

    def __init__(self, remaining_attempts: int):
        super().__init__(
            f"Invalid code. {remaining_attempts} attempts remaining.",
            remaining_attempts=remaining_attempts,
        )
        self.remaining_attempts = remaining_attempts


class Forbidden(AkiraError):
    """Authenticated, but the role or ownership does not allow the action."""
    code = "forbidden"


class NotFound(AkiraError):
    """Referenced record does not exist."""
    code = "not_found"


class Expired(AkiraError):
    """Challenge or key is past its validity window."""
    code = "expired"


class Locked(AkiraError):
    """Attempt ceiling reached; the login must restart."""
    code = "locked"


class ImmutabilityViolation(AkiraError):
    """Attempted update or delete of an audit entry."""
    code = "immutability_violation"

    def __init__(self, message: str = "Audit log entries are immutable", entry_id: Optional[str] = None):
        if entry_id is not None:
            super().__init__(message, entry_id=entry_id)
        else:
            super().__init__(message)


class DependencyUnavailable(AkiraError):
    """Store, ledger or another collaborator failed."""
    code = "dependency_unavailable"


class KeySourceUnavailable(DependencyUnavailable):
    """The high-entropy key source failed and no fallback is configured."""
    code = "key_source_unavailable"
