"""
Key sources for API key rotation.

Rotation can draw its new secret from an external high-entropy provider (an
HSM, a KMS random endpoint, a native generator). Such a provider may be
unavailable; FallbackKeySource decides whether that degrades to the local
generator or fails the rotation with KeySourceUnavailable.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from akira.core.vault import generate_secret, looks_like_secret
from akira.errors import KeySourceUnavailable
from akira.monitoring.logging import get_logger

logger = get_logger(__name__)


class KeySource(ABC):
    """Produces fresh API key secrets."""

    name: str = "abstract"

    @abstractmethod
    def generate(self) -> str:
        pass


class LocalKeySource(KeySource):
    """OS CSPRNG via the secrets module."""

    name = "local"

    def generate(self) -> str:
        return generate_secret()


class CallableKeySource(KeySource):
    """Adapter for an external generator exposed as a plain callable."""

    def __init__(self, generator: Callable[[], str], name: str = "external"):
        self._generator = generator
        self.name = name

    def generate(self) -> str:
        return self._generator()


class FallbackKeySource(KeySource):
    """
    Try a primary source, falling back to a local one on failure.

    With fallback=None the failure surfaces as KeySourceUnavailable so the
    caller can tell "provider down" apart from other rotation errors. A value
    that does not carry the expected prefix counts as a failure.
    """

    def __init__(self, primary: KeySource, fallback: Optional[KeySource] = None):
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+fallback" if fallback else primary.name

    def generate(self) -> str:
        try:
            secret = self.primary.generate()
            if not looks_like_secret(secret):
                raise ValueError("key source returned a malformed secret")
            return secret
        except Exception as e:
            if self.fallback is None:
                logger.error("key_source_unavailable", source=self.primary.name, error=type(e).__name__)
                raise KeySourceUnavailable(
                    f"Key source '{self.primary.name}' is unavailable"
                ) from e
            logger.warning(
                "key_source_fallback",
                source=self.primary.name,
                fallback=self.fallback.name,
                error=type(e).__name__,
            )
            return self.fallback.generate()


def build_rotation_source(primary: Optional[KeySource], allow_fallback: bool) -> KeySource:
    """Rotation source for the configured provider and fallback policy."""
    if primary is None:
        return LocalKeySource()
    return FallbackKeySource(primary, LocalKeySource() if allow_fallback else None)
