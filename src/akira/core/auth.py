"""
Authentication for AKIRA

Password + one-time code login for human operators:
- Self-registration (role is always Developer; elevation or demotion is admin-only)
- Password verification with Argon2id
- One-time code challenges with a TTL and an attempt ceiling
- Stateless HS256 session tokens
- Password changes

State machine, per email:

    Unauthenticated --begin_login--> ChallengeIssued --verify_challenge--> Authenticated
    ChallengeIssued --expiry / attempt ceiling--> Unauthenticated
"""

import re
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, NoReturn, Optional

from akira.core.audit import (
    AuditLedger,
    LoginFailed,
    LoginSuccess,
    MfaChallengeIssued,
    MfaFailed,
    MfaLockout,
    PasswordChanged,
    SessionEnded,
    UserRegistered,
)
from akira.core.clock import Clock, SystemClock
from akira.core.crypto import constant_time_compare, generate_random_id
from akira.core.models import Identity, PendingChallenge
from akira.core.notifier import NotificationDispatcher
from akira.core.policy import Role
from akira.core.tokens import SessionClaims, SessionTokenService
from akira.core.vault import CredentialVault
from akira.errors import (
    DependencyUnavailable,
    Denied,
    Expired,
    InvalidCode,
    Locked,
    NotFound,
    ValidationError,
)
from akira.monitoring.logging import get_logger
from akira.storage.base import ChallengeStore, DuplicateError, IdentityStore, store_guard

logger = get_logger(__name__)

CODE_LENGTH = 6
MAX_EMAIL_LENGTH = 254
MAX_DISPLAY_NAME_LENGTH = 100
MAX_PASSWORD_LENGTH = 1024

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CODE_PATTERN = re.compile(r"^[0-9]{6}$")
PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*[0-9])(?=.*[!@#$%^&*_\-.]).{8,}$")
PASSWORD_RULES = (
    "Password must be at least 8 characters and contain an uppercase letter, "
    "a lowercase letter, a digit and one of !@#$%^&*_-."
)


def normalize_email(email: Any) -> str:
    """Lower-case and validate an email address."""
    if not isinstance(email, str):
        raise ValidationError("Email is required")
    email = email.strip().lower()
    if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email address")
    return email


def validate_password(password: Any) -> str:
    """Enforce the password policy."""
    if not isinstance(password, str) or len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(PASSWORD_RULES)
    if not PASSWORD_PATTERN.match(password):
        raise ValidationError(PASSWORD_RULES)
    return password


def validate_display_name(display_name: Any) -> str:
    if not isinstance(display_name, str) or not display_name.strip():
        raise ValidationError("Display name is required")
    display_name = display_name.strip()
    if len(display_name) > MAX_DISPLAY_NAME_LENGTH:
        raise ValidationError(f"Display name must be at most {MAX_DISPLAY_NAME_LENGTH} characters")
    return display_name


def generate_code() -> str:
    """Six-digit numeric code from the OS CSPRNG."""
    return str(secrets.randbelow(900000) + 100000)


@dataclass(frozen=True)
class ChallengeSummary:
    """Returned by begin_login. Carries no token and never the code."""
    identity: Dict[str, Any]
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge_issued": True,
            "identity": dict(self.identity),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class AuthenticatedSession:
    """Returned by a successful verify_challenge."""
    session_token: str
    expires_at: datetime
    identity: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_token": self.session_token,
            "expires_at": self.expires_at.isoformat(),
            "identity": dict(self.identity),
        }


class AuthSessionMachine:
    """Drives registration, login and session lifecycle."""

    def __init__(
        self,
        identities: IdentityStore,
        challenges: ChallengeStore,
        vault: CredentialVault,
        ledger: AuditLedger,
        tokens: SessionTokenService,
        dispatcher: NotificationDispatcher,
        clock: Optional[Clock] = None,
        otp_ttl_seconds: int = 300,
        max_attempts: int = 5,
    ):
        self._identities = identities
        self._challenges = challenges
        self._vault = vault
        self._ledger = ledger
        self._tokens = tokens
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self.otp_ttl = timedelta(seconds=otp_ttl_seconds)
        self.max_attempts = max_attempts
        self._dummy_hash: Optional[str] = None

    def _equalize_timing(self, password: str) -> None:
        # Unknown emails still pay for one hash verification
        if self._dummy_hash is None:
            self._dummy_hash = self._vault.hash_password(secrets.token_urlsafe(16))
        self._vault.verify_password(self._dummy_hash, password)

    def _find_by_email(self, email: str) -> Optional[Identity]:
        with store_guard():
            return self._identities.find_identity_by_email(email)

    # ==================== Registration ====================

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        ip_address: Optional[str] = None,
    ) -> ChallengeSummary:
        """
        Create a Developer identity and issue its first login challenge.

        Role is never taken from the caller. All validation happens before
        anything is written.

        Raises:
            ValidationError: malformed input, weak password, or email unavailable
        """
        email = normalize_email(email)
        validate_password(password)
        display_name = validate_display_name(display_name)

        if self._find_by_email(email) is not None:
            raise ValidationError("Unable to register with the supplied details")

        now = self._clock.now()
        identity = Identity(
            id=generate_random_id("idn", 12),
            display_name=display_name,
            email=email,
            credential_hash=self._vault.hash_password(password),
            role=Role.DEVELOPER,
            created_at=now,
            updated_at=now,
        )
        with store_guard():
            try:
                self._identities.insert_identity(identity)
            except DuplicateError:
                raise ValidationError("Unable to register with the supplied details")

        try:
            self._ledger.append(
                UserRegistered(email=email, role=identity.role.value),
                actor_id=identity.id,
                actor_display=identity.display_name,
                ip_address=ip_address,
            )
        except DependencyUnavailable:
            with store_guard():
                self._identities.delete_identity(identity.id)
            raise

        logger.info("identity_registered", identity_id=identity.id)
        return self._issue_challenge(identity, ip_address)

    def provision(self, email: str, password: str, display_name: str, role: Role) -> Identity:
        """Operator-side creation with an explicit role, used to bootstrap the first admin."""
        email = normalize_email(email)
        validate_password(password)
        display_name = validate_display_name(display_name)
        role = Role.parse(role)

        now = self._clock.now()
        identity = Identity(
            id=generate_random_id("idn", 12),
            display_name=display_name,
            email=email,
            credential_hash=self._vault.hash_password(password),
            role=role,
            created_at=now,
            updated_at=now,
        )
        with store_guard():
            try:
                self._identities.insert_identity(identity)
            except DuplicateError:
                raise ValidationError("Email already registered")

        try:
            self._ledger.append(UserRegistered(email=email, role=role.value), actor_id=identity.id)
        except DependencyUnavailable:
            with store_guard():
                self._identities.delete_identity(identity.id)
            raise

        logger.info("identity_provisioned", identity_id=identity.id, role=role.value)
        return identity

    # ==================== Login ====================

    def begin_login(self, email: str, password: str, ip_address: Optional[str] = None) -> ChallengeSummary:
        """
        Verify the password and issue a one-time code.

        A new call for the same email replaces any outstanding challenge.

        Raises:
            ValidationError: malformed email or missing password
            Denied: unknown email or wrong password (indistinguishable)
        """
        email = normalize_email(email)
        if not isinstance(password, str) or not password or len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("Password is required")

        identity = self._find_by_email(email)
        if identity is None:
            self._equalize_timing(password)
            verified = False
        else:
            verified = self._vault.verify_password(identity.credential_hash, password)

        if not verified:
            self._ledger.append(
                LoginFailed(email=email),
                actor_id=identity.id if identity else None,
                actor_display=email,
                ip_address=ip_address,
            )
            logger.info("login_failed", ip_address=ip_address)
            raise Denied()

        if self._vault.needs_rehash(identity.credential_hash):
            identity = replace(
                identity,
                credential_hash=self._vault.hash_password(password),
                updated_at=self._clock.now(),
            )
            with store_guard():
                self._identities.update_identity(identity)

        return self._issue_challenge(identity, ip_address)

    def _issue_challenge(self, identity: Identity, ip_address: Optional[str]) -> ChallengeSummary:
        now = self._clock.now()
        code = generate_code()
        challenge = PendingChallenge(
            email=identity.email,
            challenge_id=generate_random_id("chl", 8),
            code=code,
            expires_at=now + self.otp_ttl,
            created_at=now,
        )
        with store_guard():
            self._challenges.put_challenge(challenge)

        try:
            self._ledger.append(
                MfaChallengeIssued(email=identity.email, expires_at=challenge.expires_at.isoformat()),
                actor_id=identity.id,
                actor_display=identity.display_name,
                ip_address=ip_address,
            )
        except DependencyUnavailable:
            with store_guard():
                self._challenges.delete_challenge(identity.email, challenge.challenge_id)
            raise

        minutes = max(1, int(self.otp_ttl.total_seconds() // 60))
        self._dispatcher.dispatch(
            identity.email,
            "Your AKIRA verification code",
            f"Your verification code is {code}. It expires in {minutes} minutes.",
        )
        logger.info("mfa_challenge_issued", identity_id=identity.id)
        return ChallengeSummary(identity=identity.summary(), expires_at=challenge.expires_at)

    def verify_challenge(self, email: str, code: str, ip_address: Optional[str] = None) -> AuthenticatedSession:
        """
        Check a one-time code.

        Raises:
            ValidationError: code is not six digits (no state change)
            Denied: no outstanding challenge
            Expired: the challenge timed out (it is cleared)
            Locked: the attempt ceiling was reached (it is cleared)
            InvalidCode: wrong code; carries remaining_attempts
        """
        email = normalize_email(email)
        if not isinstance(code, str) or not CODE_PATTERN.match(code):
            raise ValidationError("Code must be exactly 6 digits")

        identity = self._find_by_email(email)
        actor_id = identity.id if identity else None
        actor_display = identity.display_name if identity else email

        with store_guard():
            challenge = self._challenges.get_challenge(email)

        if challenge is None or identity is None:
            self._ledger.append(
                MfaFailed(email=email, attempts=0, reason="no_challenge"),
                actor_id=actor_id,
                actor_display=actor_display,
                ip_address=ip_address,
            )
            raise Denied("No pending verification for this login")

        if challenge.is_expired(self._clock.now()):
            with store_guard():
                self._challenges.delete_challenge(email, challenge.challenge_id)
            self._ledger.append(
                MfaFailed(email=email, attempts=challenge.attempt_count, reason="expired"),
                actor_id=actor_id,
                actor_display=actor_display,
                ip_address=ip_address,
            )
            raise Expired("Verification code has expired; log in again")

        # Reserve before comparing: at most max_attempts comparisons per challenge
        with store_guard():
            attempts = self._challenges.reserve_challenge_attempt(
                email, challenge.challenge_id, self.max_attempts
            )
        if attempts is None:
            self._lock_out(email, challenge.challenge_id, actor_id, actor_display, ip_address)

        if not constant_time_compare(challenge.code.encode(), code.encode()):
            self._ledger.append(
                MfaFailed(email=email, attempts=attempts),
                actor_id=actor_id,
                actor_display=actor_display,
                ip_address=ip_address,
            )
            raise InvalidCode(remaining_attempts=max(0, self.max_attempts - attempts))

        with store_guard():
            consumed = self._challenges.delete_challenge(email, challenge.challenge_id)
        if not consumed:
            raise Denied("No pending verification for this login")
        try:
            self._ledger.append(
                LoginSuccess(email=email),
                actor_id=identity.id,
                actor_display=identity.display_name,
                ip_address=ip_address,
            )
        except DependencyUnavailable:
            with store_guard():
                if self._challenges.get_challenge(email) is None:
                    self._challenges.put_challenge(challenge.with_attempts(attempts))
            raise

        token, expires_at = self._tokens.issue(identity.id, identity.role)
        logger.info("login_succeeded", identity_id=identity.id)
        return AuthenticatedSession(session_token=token, expires_at=expires_at, identity=identity.summary())

    def _lock_out(
        self,
        email: str,
        challenge_id: str,
        actor_id: Optional[str],
        actor_display: str,
        ip_address: Optional[str],
    ) -> NoReturn:
        """Clear an exhausted challenge and raise Locked; Denied if it is already gone."""
        with store_guard():
            current = self._challenges.get_challenge(email)
        if current is None or current.challenge_id != challenge_id:
            raise Denied("No pending verification for this login")

        with store_guard():
            cleared = self._challenges.delete_challenge(email, challenge_id)
        if cleared:
            self._ledger.append(
                MfaLockout(email=email, attempts=self.max_attempts),
                actor_id=actor_id,
                actor_display=actor_display,
                ip_address=ip_address,
            )
            logger.warning("mfa_lockout", identity_id=actor_id)
        raise Locked("Too many failed attempts; log in again")

    # ==================== Sessions ====================

    def verify_session(self, token: str) -> SessionClaims:
        """Validate a session token and confirm its identity still exists."""
        claims = self._tokens.verify(token)
        with store_guard():
            identity = self._identities.find_identity(claims.identity_id)
        if identity is None:
            raise Denied("Invalid or expired session")
        return claims

    def end_session(self, token: str, ip_address: Optional[str] = None) -> None:
        """Record the logout. Tokens are stateless, so the client discards it."""
        claims = self.verify_session(token)
        self._ledger.append(
            SessionEnded(token_id=claims.token_id),
            actor_id=claims.identity_id,
            actor_display=claims.identity_id,
            ip_address=ip_address,
        )
        logger.info("session_ended", identity_id=claims.identity_id)

    # ==================== Passwords ====================

    def change_password(
        self,
        identity_id: str,
        old_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
    ) -> None:
        """
        Replace an identity's password after checking the current one.

        Raises:
            NotFound: unknown identity
            ValidationError: new password fails the policy
            Denied: current password is wrong
        """
        validate_password(new_password)
        with store_guard():
            identity = self._identities.find_identity(identity_id)
        if identity is None:
            raise NotFound("Identity not found")

        if not isinstance(old_password, str) or not self._vault.verify_password(identity.credential_hash, old_password):
            self._ledger.append(
                LoginFailed(email=identity.email, reason="password_change_rejected"),
                actor_id=identity.id,
                actor_display=identity.display_name,
                ip_address=ip_address,
            )
            raise Denied()

        updated = replace(
            identity,
            credential_hash=self._vault.hash_password(new_password),
            updated_at=self._clock.now(),
        )
        with store_guard():
            self._identities.update_identity(updated)

        try:
            self._ledger.append(
                PasswordChanged(identity_id=identity.id),
                actor_id=identity.id,
                actor_display=identity.display_name,
                ip_address=ip_address,
            )
        except DependencyUnavailable:
            with store_guard():
                self._identities.update_identity(identity)
            raise

        logger.info("password_changed", identity_id=identity.id)
