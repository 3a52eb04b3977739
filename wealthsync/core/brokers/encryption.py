"""Per-user credential encryption (AES-256-GCM).

Each user gets a key derived from the application secret with
PBKDF2-HMAC-SHA256, salted with the user id, so ciphertext stored for one
user cannot be opened with another user's key.
"""

from __future__ import annotations

import hashlib
import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

MIN_SECRET_LENGTH = 32
KEY_LENGTH = 32
NONCE_LENGTH = 12
PBKDF2_ITERATIONS = 100_000


class EncryptionError(Exception):
    """Base class for credential encryption errors."""


class InvalidKeyError(EncryptionError):
    """Application secret is unusable."""


class InvalidCiphertextError(EncryptionError):
    """Ciphertext or nonce is malformed."""


class DecryptionFailedError(EncryptionError):
    """Authentication tag did not verify (wrong user, key or tampered data)."""


class CredentialEncryptor:
    """Encrypts broker secrets with a key unique to each user."""

    def __init__(self, secret: str):
        """Initialize with the application secret.

        Args:
            secret: Application secret, at least 32 characters

        Raises:
            InvalidKeyError: If the secret is too short
        """
        if len(secret) < MIN_SECRET_LENGTH:
            raise InvalidKeyError(
                f"Encryption secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        self._master_key = hashlib.sha256(secret.encode("utf-8")).digest()

    def derive_key(self, user_id: str) -> bytes:
        """Derive the 32-byte key for a user. Same user, same key."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=f"user:{user_id}".encode("utf-8"),
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, plaintext: str, user_id: str) -> Tuple[bytes, bytes]:
        """Encrypt a secret for a user.

        Args:
            plaintext: Secret to protect (may be empty)
            user_id: Owner of the secret

        Returns:
            Tuple of (ciphertext, nonce). The nonce is fresh for every call.
        """
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = AESGCM(self.derive_key(user_id)).encrypt(
            nonce, plaintext.encode("utf-8"), None
        )
        return ciphertext, nonce

    def decrypt(self, ciphertext: bytes, nonce: bytes, user_id: str) -> str:
        """Decrypt a secret previously encrypted for the same user.

        Raises:
            InvalidCiphertextError: Empty ciphertext or a bad nonce
            DecryptionFailedError: Tag mismatch
        """
        if not ciphertext:
            raise InvalidCiphertextError("Ciphertext is empty")
        if not nonce or len(nonce) != NONCE_LENGTH:
            raise InvalidCiphertextError(f"Nonce must be {NONCE_LENGTH} bytes")

        try:
            plaintext = AESGCM(self.derive_key(user_id)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionFailedError("Failed to decrypt credential") from e
        return plaintext.decode("utf-8")
