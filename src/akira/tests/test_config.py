"""
Tests for configuration and secret loading

Tests cover:
- Environment parsing
- Development auto-generation versus production enforcement
- Secret providers
"""

import pytest

from akira.config import (
    AkiraConfig,
    ConfigurationError,
    EnvSecretProvider,
    StaticSecretProvider,
    get_config,
    reset_config,
)
from akira.tests.conftest import TEST_MASTER_KEY, TEST_SESSION_SECRET, TEST_SIGNING_KEY


class TestAkiraConfig:
    """Environment-driven configuration."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("AKIRA_DATABASE_URL", "memory://")
        monkeypatch.setenv("AKIRA_MASTER_KEY", TEST_MASTER_KEY.hex())
        monkeypatch.setenv("AKIRA_OTP_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("AKIRA_ROTATION_FALLBACK", "false")

        config = AkiraConfig()
        assert config.database_url == "memory://"
        assert config.master_key == TEST_MASTER_KEY.hex()
        assert config.otp_max_attempts == 3
        assert config.rotation_fallback is False
        assert config.session_ttl_seconds == 3600

    def test_development_generates_missing_secrets(self):
        """Outside production, missing secrets are generated."""
        config = AkiraConfig()
        assert len(bytes.fromhex(config.master_key)) == 32
        assert len(config.audit_signing_key) >= 32
        assert len(config.session_secret) >= 32

    def test_production_requires_secrets(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        with pytest.raises(ConfigurationError):
            AkiraConfig()

    def test_production_rejects_short_secret(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        with pytest.raises(ConfigurationError):
            AkiraConfig(
                master_key=TEST_MASTER_KEY.hex(),
                audit_signing_key="short",
                session_secret=TEST_SESSION_SECRET,
            )

    @pytest.mark.parametrize("master_key", ["zz" * 32, "00" * 16])
    def test_bad_master_key(self, master_key):
        with pytest.raises(ConfigurationError):
            AkiraConfig(master_key=master_key)

    def test_bad_limits(self):
        with pytest.raises(ConfigurationError):
            AkiraConfig(otp_max_attempts=0)
        with pytest.raises(ConfigurationError):
            AkiraConfig(key_validity_days=0)

    def test_repr_hides_secrets(self):
        config = AkiraConfig(
            master_key=TEST_MASTER_KEY.hex(),
            audit_signing_key=TEST_SIGNING_KEY,
            session_secret=TEST_SESSION_SECRET,
        )
        text = repr(config)
        assert TEST_MASTER_KEY.hex() not in text
        assert TEST_SIGNING_KEY not in text
        assert TEST_SESSION_SECRET not in text

    def test_get_config_is_cached(self):
        assert get_config() is get_config()
        first = get_config()
        reset_config()
        assert get_config() is not first


class TestSecretProviders:
    """Secret providers."""

    def test_static_provider(self):
        provider = StaticSecretProvider(TEST_MASTER_KEY, b"signing", "session")
        assert provider.master_key() == TEST_MASTER_KEY
        assert provider.signing_key() == b"signing"
        assert provider.session_secret() == "session"
        assert "redacted" in repr(provider)

    def test_static_provider_checks_length(self):
        with pytest.raises(ConfigurationError):
            StaticSecretProvider(b"short", b"signing", "session")

    def test_env_provider(self, monkeypatch):
        monkeypatch.setenv("AKIRA_MASTER_KEY", TEST_MASTER_KEY.hex())
        monkeypatch.setenv("AKIRA_AUDIT_SIGNING_KEY", TEST_SIGNING_KEY)
        monkeypatch.setenv("AKIRA_SESSION_SECRET", TEST_SESSION_SECRET)

        provider = EnvSecretProvider()
        assert provider.master_key() == TEST_MASTER_KEY
        assert provider.signing_key() == TEST_SIGNING_KEY.encode()
        assert provider.session_secret() == TEST_SESSION_SECRET

    def test_config_provider(self, config):
        provider = config.secret_provider()
        assert provider.master_key() == TEST_MASTER_KEY
