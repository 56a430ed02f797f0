"""
Envelope encryption for custodied Shamir shares.
Uses AES-256-GCM; the 16-byte authentication tag is verified before any
plaintext is returned.
"""

import base64
import binascii
import os
from dataclasses import dataclass
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import AuthenticationFailed

logger = get_logger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16


class EncryptionError(Exception):
    """Custom exception for key configuration and encryption errors."""

    pass


@dataclass(frozen=True)
class EncryptedShare:
    """Base64 artifacts as stored in the secrets table."""

    ciphertext: str
    iv: str
    auth_tag: str

    def blob(self) -> bytes:
        """Stored layout with the tag appended: [encryptedData | tag]."""
        return base64.b64decode(self.ciphertext) + base64.b64decode(self.auth_tag)


def load_key(raw: str | None) -> bytes:
    """
    Decode the configured key into exactly 32 bytes.

    Accepts 64 hex characters or base64 (standard or urlsafe).

    Raises:
        EncryptionError: If the key is missing or not 32 bytes
    """
    if not raw:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    value = raw.strip()
    candidates = []
    if len(value) == KEY_LENGTH * 2:
        try:
            candidates.append(bytes.fromhex(value))
        except ValueError:
            pass
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            candidates.append(decoder(value))
        except (binascii.Error, ValueError):
            continue

    for key in candidates:
        if len(key) == KEY_LENGTH:
            return key

    raise EncryptionError("ENCRYPTION_KEY must decode to exactly 32 bytes")


class EnvelopeCipher:
    """
    AES-256-GCM cipher bound to one key.

    The key is injected so tests can supply deterministic material and the
    process-wide instance is built once from settings.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise EncryptionError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedShare:
        """
        Encrypt a share with a fresh random IV.

        Args:
            plaintext: Share value to custody

        Returns:
            EncryptedShare: base64 ciphertext, iv and tag
        """
        if not isinstance(plaintext, str):
            raise EncryptionError("Plaintext must be a string")

        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        encrypted_data, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        logger.debug("Share encrypted", encrypted_length=len(encrypted_data))

        return EncryptedShare(
            ciphertext=base64.b64encode(encrypted_data).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            auth_tag=base64.b64encode(tag).decode("ascii"),
        )

    def decrypt(self, ciphertext: str, iv: str, auth_tag: str | None = None) -> str:
        """
        Verify and decrypt a stored share.

        Args:
            ciphertext: base64 encrypted data, or the whole [data | tag] blob
                when auth_tag is None
            iv: base64 12-byte IV
            auth_tag: base64 16-byte tag stored alongside

        Returns:
            str: Decrypted share

        Raises:
            AuthenticationFailed: If the tag does not verify or inputs are malformed
        """
        try:
            data = base64.b64decode(ciphertext, validate=True)
            nonce = base64.b64decode(iv, validate=True)
            if auth_tag is None:
                encrypted_data, tag = split_blob(data)
            else:
                encrypted_data, tag = data, base64.b64decode(auth_tag, validate=True)
        except (binascii.Error, ValueError) as e:
            raise AuthenticationFailed(f"Malformed encrypted share: {e}") from e

        if len(nonce) != IV_LENGTH:
            raise AuthenticationFailed(f"IV must be {IV_LENGTH} bytes, got {len(nonce)}")
        if len(tag) != TAG_LENGTH:
            raise AuthenticationFailed(f"Auth tag must be {TAG_LENGTH} bytes, got {len(tag)}")

        try:
            plaintext = self._aesgcm.decrypt(nonce, encrypted_data + tag, None)
        except InvalidTag as e:
            logger.error("Share decryption failed - authentication tag mismatch")
            raise AuthenticationFailed("Authentication tag verification failed") from e

        return plaintext.decode("utf-8")


def split_blob(blob: bytes) -> tuple[bytes, bytes]:
    """Split a stored blob into (encrypted_data, tag) using the fixed tag length."""
    if len(blob) < TAG_LENGTH:
        raise ValueError("Encrypted blob shorter than the authentication tag")
    return blob[:-TAG_LENGTH], blob[-TAG_LENGTH:]


@lru_cache(maxsize=1)
def get_envelope_cipher() -> EnvelopeCipher:
    """Process-wide cipher built once from ENCRYPTION_KEY."""
    return EnvelopeCipher(load_key(settings.ENCRYPTION_KEY))


def validate_encryption_config() -> bool:
    """
    Validate that encryption is properly configured.

    Returns:
        bool: True if a round trip with the configured key succeeds
    """
    try:
        cipher = get_envelope_cipher()
        sealed = cipher.encrypt("test_encryption_12345")
        is_valid = cipher.decrypt(sealed.ciphertext, sealed.iv, sealed.auth_tag) == "test_encryption_12345"

        if is_valid:
            logger.info("Encryption configuration validated successfully")
        else:
            logger.error("Encryption validation failed - data mismatch")

        return is_valid

    except (EncryptionError, AuthenticationFailed) as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False


def generate_new_key() -> str:
    """
    Generate a new base64 AES-256 key.

    Note:
        Use this for initial setup. Rotating the key requires re-encrypting
        every custodied share.
    """
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")
