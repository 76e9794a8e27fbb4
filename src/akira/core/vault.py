"""
Credential Vault

Cryptographic primitives used by the key lifecycle and the login flow:
- High-entropy API key secrets with a recognizable prefix
- AES-256-GCM encryption of stored secrets under the master key
- SHA-256 fingerprints used as lookup keys
- Argon2id password hashing

Validation paths only ever compare fingerprints; decrypt() exists for the
privileged re-encryption path and is never used to authenticate a key.
"""

import secrets
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from akira.core.crypto import b64url_encode, sha256_hex
from akira.errors import ValidationError

SECRET_PREFIX = "akira_"
SECRET_BYTES = 32  # 256 bits
NONCE_BYTES = 12
MASTER_KEY_BYTES = 32

# base64url of 32 bytes is 43 characters
_MIN_SECRET_LENGTH = len(SECRET_PREFIX) + 43
_MAX_SECRET_LENGTH = 256


def generate_secret() -> str:
    """Generate a new API key secret: prefix + base64url(32 random bytes)."""
    return SECRET_PREFIX + b64url_encode(secrets.token_bytes(SECRET_BYTES))


def looks_like_secret(value: object) -> bool:
    """Cheap format check; says nothing about whether the key exists."""
    return (
        isinstance(value, str)
        and value.startswith(SECRET_PREFIX)
        and _MIN_SECRET_LENGTH <= len(value) <= _MAX_SECRET_LENGTH
    )


def fingerprint(secret: str) -> str:
    """One-way SHA-256 digest of a secret, used as its lookup key."""
    return sha256_hex(secret.encode("utf-8"))


class CredentialVault:
    """
    Holds the master key and the password hasher.

    One instance per process; the master key comes from the SecretProvider and
    is never logged or exposed through repr().
    """

    def __init__(self, master_key: bytes, password_hasher: Optional[PasswordHasher] = None):
        if len(master_key) != MASTER_KEY_BYTES:
            raise ValueError(f"Master key must be {MASTER_KEY_BYTES} bytes for AES-256")
        self._aead = AESGCM(master_key)
        self._hasher = password_hasher or PasswordHasher(type=Type.ID)

    def __repr__(self) -> str:
        return "CredentialVault(<redacted>)"

    # Secrets

    def generate_secret(self) -> str:
        return generate_secret()

    def fingerprint(self, secret: str) -> str:
        return fingerprint(secret)

    def encrypt(self, plaintext: str) -> Tuple[str, str]:
        """
        Encrypt a secret under the master key.

        A fresh random nonce is drawn for every call and returned alongside the
        ciphertext; it must be stored with it.

        Returns:
            (iv_hex, cipher_text_hex)
        """
        nonce = secrets.token_bytes(NONCE_BYTES)
        cipher_text = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return nonce.hex(), cipher_text.hex()

    def decrypt(self, iv: str, cipher_text: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            ValidationError: if the data is malformed or fails authentication
        """
        try:
            nonce = bytes.fromhex(iv)
            data = bytes.fromhex(cipher_text)
        except ValueError:
            raise ValidationError("Stored ciphertext is not valid hex")
        if len(nonce) != NONCE_BYTES:
            raise ValidationError("Stored IV has the wrong length")
        try:
            return self._aead.decrypt(nonce, data, None).decode("utf-8")
        except InvalidTag:
            raise ValidationError("Ciphertext failed authentication")

    # Passwords

    def hash_password(self, plaintext: str) -> str:
        """Argon2id hash with a random salt embedded in the encoded output."""
        return self._hasher.hash(plaintext)

    def verify_password(self, password_hash: str, plaintext: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
