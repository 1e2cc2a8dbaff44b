"""
Secret Vault - sealed storage for second-factor secrets

AES-256-GCM authenticated encryption with a purpose tag bound in as
associated data. A token sealed for one purpose ("totp_seed") fails to
open under another ("backup_codes"), and any tampering or truncation
fails authentication instead of producing a plausible plaintext.

Token format (urlsafe base64, unpadded):
    VERSION (1 byte) + NONCE (12 bytes) + CIPHERTEXT (variable + 16 byte tag)
"""

from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from authgate.config import settings
from authgate.exceptions import ConfigurationError, InvalidSecretTokenError

logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32
NONCE_SIZE = 12
AUTH_TAG_SIZE = 16

TOKEN_VERSION = b"\x01"

_KEY_DERIVATION_INFO = b"authgate secret vault v1"


class SecretPurpose(str, enum.Enum):
    """Application-wide purpose tags a sealed token is bound to."""

    TOTP_SEED = "totp_seed"
    BACKUP_CODES = "backup_codes"


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def derive_key(secret_key: str) -> bytes:
    """Derive a 256-bit vault key from the application secret key."""
    if not secret_key:
        raise ConfigurationError("A secret key is required to derive the vault key")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=None,
        info=_KEY_DERIVATION_INFO,
    )
    return hkdf.derive(secret_key.encode("utf-8"))


class SecretVault:
    """
    Seal and open short secrets.

    Usage:
        vault = SecretVault(key)
        token = vault.seal("JBSWY3DPEHPK3PXP", SecretPurpose.TOTP_SEED)
        seed = vault.open(token, SecretPurpose.TOTP_SEED)
    """

    def __init__(self, key: bytes):
        if not key or len(key) != AES_KEY_SIZE:
            raise ConfigurationError(f"Vault key must be exactly {AES_KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)

    @staticmethod
    def _associated_data(purpose: SecretPurpose) -> bytes:
        return f"authgate:{purpose.value}".encode("ascii")

    def seal(self, plaintext: str, purpose: SecretPurpose) -> str:
        """Encrypt plaintext and bind it to purpose."""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), self._associated_data(purpose))
        return _b64encode(TOKEN_VERSION + nonce + ciphertext)

    def open(self, token: str, purpose: SecretPurpose) -> str:
        """
        Decrypt a token sealed for purpose.

        Raises:
            InvalidSecretTokenError: token is malformed, truncated, tampered
                with, sealed under another key, or sealed for another purpose.
        """
        try:
            raw = _b64decode(token)
            if len(raw) < 1 + NONCE_SIZE + AUTH_TAG_SIZE or raw[:1] != TOKEN_VERSION:
                raise ValueError("malformed token")
            nonce = raw[1 : 1 + NONCE_SIZE]
            ciphertext = raw[1 + NONCE_SIZE :]
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, self._associated_data(purpose))
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError, TypeError, binascii.Error, UnicodeDecodeError) as e:
            logger.error(
                f"Failed to open sealed secret ({purpose.value}): {type(e).__name__}",
                extra={"purpose": purpose.value},
            )
            raise InvalidSecretTokenError(purpose.value) from e

    def seal_json(self, value, purpose: SecretPurpose) -> str:
        return self.seal(json.dumps(value), purpose)

    def open_json(self, token: str, purpose: SecretPurpose):
        plaintext = self.open(token, purpose)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            logger.error(f"Sealed secret ({purpose.value}) is not valid JSON", extra={"purpose": purpose.value})
            raise InvalidSecretTokenError(purpose.value) from e


@lru_cache(maxsize=1)
def get_secret_vault() -> SecretVault:
    """Application-wide vault built from settings."""
    if settings.mfa_encryption_key:
        key = _b64decode(settings.mfa_encryption_key)
    else:
        key = derive_key(settings.secret_key)
    return SecretVault(key)
