"""
Encryption service for secure storage of OAuth credentials.

Uses AES-256-GCM (authenticated encryption) from the cryptography package.
Every call draws a fresh random nonce, so encrypting the same credential
twice never yields the same ciphertext.
"""

import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from runclub.config import get_settings
from runclub.errors import CryptoError, ValidationError
from runclub.schemas.credential import EncryptedBlob

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16  # nonce size used by the legacy snapshot files
TAG_LENGTH = 16


class CredentialCipher:
    """
    Encrypts and decrypts credential payloads.

    Without a key the cipher is disabled: ``encrypt`` and ``decrypt``
    return None and log a warning, so the rest of the system keeps working.
    ``decrypt`` never raises; tampering, a wrong key or a malformed blob
    all come back as None.
    """

    def __init__(self, encryption_key: str | None):
        """
        Initialize the cipher.

        Args:
            encryption_key: 64 hex characters (32 bytes), or empty/None to
                disable encryption

        Raises:
            ValidationError: If a key is given but is not 32 bytes of hex
        """
        self._aesgcm: AESGCM | None = None

        if not encryption_key:
            return

        try:
            key = bytes.fromhex(encryption_key.strip())
        except ValueError:
            raise ValidationError("Encryption key must be hexadecimal")

        if len(key) != KEY_LENGTH:
            raise ValidationError(
                f"Encryption key must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex characters)"
            )

        self._aesgcm = AESGCM(key)

    @property
    def is_configured(self) -> bool:
        """Check if an encryption key is available."""
        return self._aesgcm is not None

    def encrypt(self, plain: Any) -> EncryptedBlob | None:
        """
        Encrypt a JSON-serializable payload.

        Args:
            plain: Credential model or any JSON-serializable object

        Returns:
            EncryptedBlob, or None when ``plain`` is None or no key is set

        Raises:
            CryptoError: If the payload cannot be serialized
        """
        if plain is None:
            return None

        if self._aesgcm is None:
            logger.warning("No encryption key configured, credential not encrypted")
            return None

        if isinstance(plain, BaseModel):
            plain = plain.model_dump()

        try:
            data = json.dumps(plain).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise CryptoError(f"Failed to serialize data to JSON: {e}")

        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, data, None)

        return EncryptedBlob(
            iv=iv.hex(),
            ciphertext=sealed[:-TAG_LENGTH].hex(),
            auth_tag=sealed[-TAG_LENGTH:].hex(),
        )

    def decrypt(self, blob: EncryptedBlob | dict | None) -> Any | None:
        """
        Decrypt a blob back to its JSON payload.

        Args:
            blob: EncryptedBlob or its dict form (``encrypted``, ``iv``, ``authTag``)

        Returns:
            Decrypted object, or None on any failure
        """
        if blob is None:
            return None

        if self._aesgcm is None:
            logger.warning("No encryption key available for decryption")
            return None

        try:
            if not isinstance(blob, EncryptedBlob):
                blob = EncryptedBlob.model_validate(blob)
            return self._open(blob)
        except (CryptoError, PydanticValidationError) as e:
            logger.warning(f"Failed to decrypt credential: {e}")
            return None

    def _open(self, blob: EncryptedBlob) -> Any:
        try:
            iv = bytes.fromhex(blob.iv)
            tag = bytes.fromhex(blob.auth_tag)
            ciphertext = bytes.fromhex(blob.ciphertext)
        except ValueError as e:
            raise CryptoError(f"Malformed encrypted blob: {e}")

        # AESGCM accepts 8..128 byte nonces
        if not 8 <= len(iv) <= 128 or len(tag) != TAG_LENGTH:
            raise CryptoError("Malformed encrypted blob: bad nonce or tag length")
        sealed = ciphertext + tag

        try:
            data = self._aesgcm.decrypt(iv, sealed, None)
        except InvalidTag:
            raise CryptoError("Authentication tag mismatch (tampered data or wrong key)")

        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CryptoError(f"Failed to parse decrypted data as JSON: {e}")

    def encrypt_to_json(self, plain: Any) -> str | None:
        """Encrypt and return the blob as a JSON string for a text column."""
        blob = self.encrypt(plain)
        return blob.model_dump_json(by_alias=True) if blob else None

    def decrypt_from_json(self, encrypted_json: str | None) -> Any | None:
        """Decrypt a blob stored as a JSON string."""
        if not encrypted_json:
            return None
        try:
            data = json.loads(encrypted_json)
        except ValueError as e:
            logger.warning(f"Failed to parse encrypted JSON: {e}")
            return None
        return self.decrypt(data)

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new encryption key.

        Returns:
            64 hex characters suitable for the ENCRYPTION_KEY env var
        """
        return os.urandom(KEY_LENGTH).hex()


def get_credential_cipher() -> CredentialCipher:
    """
    Build a cipher from the application settings.

    Returns:
        CredentialCipher, disabled when ENCRYPTION_KEY is not set
    """
    settings = get_settings()
    if not settings.encryption_configured:
        logger.warning("Encryption key not configured. Set ENCRYPTION_KEY in .env")
    return CredentialCipher(settings.encryption_key)
