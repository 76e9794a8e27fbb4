"""
AKIRA Configuration

Environment-based configuration for the access gateway, plus the
SecretProvider that hands the process-wide master, signing and session keys
to the core. Secrets are loaded once and never logged.
"""

import os
import secrets
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

MASTER_KEY_BYTES = 32
MIN_SECRET_LENGTH = 32


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class AkiraConfig:
    """Configuration for the access gateway."""

    # Storage
    database_url: str = field(default_factory=lambda: os.getenv("AKIRA_DATABASE_URL", "sqlite:///./akira.db"))

    # Secrets (hex master key, free-form signing/session secrets)
    master_key: str = field(default_factory=lambda: os.getenv("AKIRA_MASTER_KEY", ""))
    audit_signing_key: str = field(default_factory=lambda: os.getenv("AKIRA_AUDIT_SIGNING_KEY", ""))
    session_secret: str = field(default_factory=lambda: os.getenv("AKIRA_SESSION_SECRET", ""))

    # Lifetimes
    session_ttl_seconds: int = field(default_factory=lambda: int(os.getenv("AKIRA_SESSION_TTL_SECONDS", "3600")))
    otp_ttl_seconds: int = field(default_factory=lambda: int(os.getenv("AKIRA_OTP_TTL_SECONDS", "300")))
    otp_max_attempts: int = field(default_factory=lambda: int(os.getenv("AKIRA_OTP_MAX_ATTEMPTS", "5")))
    key_validity_days: int = field(default_factory=lambda: int(os.getenv("AKIRA_KEY_VALIDITY_DAYS", "30")))

    # Key rotation falls back to the local generator when the external source fails
    rotation_fallback: bool = field(default_factory=lambda: _env_bool("AKIRA_ROTATION_FALLBACK", "true"))

    # Notifier worker pool
    notifier_workers: int = field(default_factory=lambda: int(os.getenv("AKIRA_NOTIFIER_WORKERS", "2")))

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("AKIRA_LOG_LEVEL", "INFO"))
    log_json: bool = field(default_factory=lambda: _env_bool("AKIRA_LOG_JSON", "false"))

    def __post_init__(self):
        if not self.master_key:
            self.master_key = self._missing_secret("AKIRA_MASTER_KEY", secrets.token_hex(MASTER_KEY_BYTES))
        else:
            try:
                raw = bytes.fromhex(self.master_key)
            except ValueError:
                raise ConfigurationError("AKIRA_MASTER_KEY must be hex encoded")
            if len(raw) != MASTER_KEY_BYTES:
                raise ConfigurationError(
                    f"AKIRA_MASTER_KEY must decode to {MASTER_KEY_BYTES} bytes (AES-256).\n"
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )

        if not self.audit_signing_key:
            self.audit_signing_key = self._missing_secret("AKIRA_AUDIT_SIGNING_KEY", secrets.token_hex(32))
        elif len(self.audit_signing_key) < MIN_SECRET_LENGTH:
            self._short_secret("AKIRA_AUDIT_SIGNING_KEY")

        if not self.session_secret:
            self.session_secret = self._missing_secret("AKIRA_SESSION_SECRET", secrets.token_hex(32))
        elif len(self.session_secret) < MIN_SECRET_LENGTH:
            self._short_secret("AKIRA_SESSION_SECRET")

        if self.otp_max_attempts < 1:
            raise ConfigurationError("AKIRA_OTP_MAX_ATTEMPTS must be at least 1")
        if self.key_validity_days < 1:
            raise ConfigurationError("AKIRA_KEY_VALIDITY_DAYS must be at least 1")

    @staticmethod
    def _missing_secret(name: str, generated: str) -> str:
        if is_production():
            raise ConfigurationError(f"{name} environment variable is required in production.")
        # Auto-generate for development; data encrypted or signed with it will not survive a restart
        logger.warning(
            "%s not set - using auto-generated secret. "
            "This is fine for development but MUST be set in production.",
            name,
        )
        return generated

    @staticmethod
    def _short_secret(name: str) -> None:
        if is_production():
            raise ConfigurationError(f"{name} must be at least {MIN_SECRET_LENGTH} characters.")
        logger.warning("%s is too short (< %d chars). Use a longer secret in production.", name, MIN_SECRET_LENGTH)

    def secret_provider(self) -> "SecretProvider":
        return StaticSecretProvider(
            master_key=bytes.fromhex(self.master_key),
            signing_key=self.audit_signing_key.encode(),
            session_secret=self.session_secret,
        )

    def __repr__(self) -> str:
        return (
            f"AkiraConfig(database_url={self.database_url!r}, "
            f"session_ttl_seconds={self.session_ttl_seconds}, otp_ttl_seconds={self.otp_ttl_seconds}, "
            f"otp_max_attempts={self.otp_max_attempts}, key_validity_days={self.key_validity_days}, "
            f"rotation_fallback={self.rotation_fallback})"
        )


class SecretProvider(ABC):
    """Process-wide secrets: master key, audit signing key, session secret."""

    @abstractmethod
    def master_key(self) -> bytes:
        """32-byte key for encrypting stored API key secrets."""
        pass

    @abstractmethod
    def signing_key(self) -> bytes:
        """Key for audit entry HMAC signatures."""
        pass

    @abstractmethod
    def session_secret(self) -> str:
        """Key for signing session tokens."""
        pass


class StaticSecretProvider(SecretProvider):
    """Holds secrets already loaded into memory."""

    def __init__(self, master_key: bytes, signing_key: bytes, session_secret: str):
        if len(master_key) != MASTER_KEY_BYTES:
            raise ConfigurationError(f"Master key must be {MASTER_KEY_BYTES} bytes")
        self._master_key = master_key
        self._signing_key = signing_key
        self._session_secret = session_secret

    def master_key(self) -> bytes:
        return self._master_key

    def signing_key(self) -> bytes:
        return self._signing_key

    def session_secret(self) -> str:
        return self._session_secret

    def __repr__(self) -> str:
        return "StaticSecretProvider(<redacted>)"


class EnvSecretProvider(StaticSecretProvider):
    """Loads secrets once from the environment through AkiraConfig."""

    def __init__(self, config: Optional[AkiraConfig] = None):
        config = config or get_config()
        super().__init__(
            master_key=bytes.fromhex(config.master_key),
            signing_key=config.audit_signing_key.encode(),
            session_secret=config.session_secret,
        )


_config_instance: Optional[AkiraConfig] = None


def get_config() -> AkiraConfig:
    """Get the current configuration (cached singleton)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = AkiraConfig()
    return _config_instance


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _config_instance
    _config_instance = None


def is_production() -> bool:
    return os.getenv("ENVIRONMENT", "development") == "production"
