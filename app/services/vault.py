"""AES-256-GCM encryption for OAuth tokens stored at rest."""

import base64
import binascii
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import Settings
from app.services.errors import DecryptionFailed, EmptyInput, KeyConfigError

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


def generate_key() -> str:
    """Generate a new base64-encoded 256-bit key for WHOOP_TOKEN_ENCRYPTION_KEY."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")


class CredentialVault:
    """Encrypts and decrypts token strings with one process-wide key.

    Ciphertext layout: ``base64(nonce[12] || ciphertext || tag[16])``.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise KeyConfigError(f"encryption key must be {KEY_SIZE} bytes")
        self._aes_gcm = AESGCM(bytes(key))

    @classmethod
    def from_encoded_key(cls, encoded: str | None) -> "CredentialVault":
        """Build a vault from a base64-encoded key.

        Raises:
            KeyConfigError: If the key is missing, not base64, or not 32 bytes.
        """
        if not encoded:
            raise KeyConfigError("WHOOP_TOKEN_ENCRYPTION_KEY is required")
        try:
            key = base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise KeyConfigError("WHOOP_TOKEN_ENCRYPTION_KEY must be base64")
        if len(key) != KEY_SIZE:
            raise KeyConfigError(
                f"WHOOP_TOKEN_ENCRYPTION_KEY must decode to {KEY_SIZE} bytes, got {len(key)}"
            )
        logger.info("Token encryption key loaded")
        return cls(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        return cls.from_encoded_key(settings.whoop_token_encryption_key)

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise EmptyInput("plaintext is empty")

        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = self._aes_gcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        if not blob:
            raise EmptyInput("ciphertext is empty")

        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionFailed("ciphertext must be base64")

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailed("ciphertext too short")

        nonce, encrypted = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aes_gcm.decrypt(nonce, encrypted, None)
        except InvalidTag:
            logger.error("Token decryption failed: invalid authentication tag")
            raise DecryptionFailed("ciphertext failed authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailed("plaintext is not valid UTF-8")
