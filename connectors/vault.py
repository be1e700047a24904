"""
Credential Vault — encrypt / decrypt OAuth tokens and app passwords at rest.

Uses AES-256-GCM from the ``cryptography`` library.  Every ``encrypt`` call
draws a fresh 16-byte salt and a fresh 12-byte nonce; the key is derived from
the master secret and that salt with PBKDF2-HMAC-SHA256.  The stored shape is
``{ciphertext, iv, authTag, salt}``, all base64.

The master secret is injected by the caller (read from
``config.vault_master_secret`` once at startup) and validated in the
constructor, before any cryptographic work.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import warnings
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict, Field

from connectors.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

MIN_MASTER_SECRET_LENGTH = 32
DEFAULT_ITERATIONS = 100_000

_SALT_BYTES = 16
_NONCE_BYTES = 12
_TAG_BYTES = 16
_KEY_BYTES = 32

# Fixed salt used by records written before per-record salts existed.
_LEGACY_SALT = b"calendar-token-encryption-salt"


class EncryptedSecret(BaseModel):
    """The four components of one encrypted value; always replaced together."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ciphertext: str = Field(..., min_length=1)
    iv: str = Field(..., min_length=1)
    auth_tag: str = Field(..., min_length=1, alias="authTag")
    salt: str = Field(..., min_length=1)

    def to_dict(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedSecret":
        return cls.model_validate(data)


class LegacyEncryptedSecret(BaseModel):
    """Pre-migration record: no per-record salt."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ciphertext: str = Field(..., min_length=1)
    iv: str = Field(..., min_length=1)
    auth_tag: str = Field(..., min_length=1, alias="authTag")


def is_legacy_secret(data: Optional[Dict[str, Any]]) -> bool:
    """True for a stored secret dict written in the fixed-salt format."""
    return bool(data) and not data.get("salt")


def _b64e(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64d(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class CredentialVault:
    """Stateless AEAD encryption keyed by an injected master secret."""

    def __init__(self, master_secret: Optional[str], *, iterations: int = DEFAULT_ITERATIONS) -> None:
        if not master_secret:
            raise ConfigurationError("Vault master secret is not configured")
        if len(master_secret) < MIN_MASTER_SECRET_LENGTH:
            raise ConfigurationError(
                f"Vault master secret must be at least {MIN_MASTER_SECRET_LENGTH} characters"
            )
        self._master = master_secret.encode("utf-8")
        self._iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=_KEY_BYTES,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._master)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        salt = os.urandom(_SALT_BYTES)
        nonce = os.urandom(_NONCE_BYTES)
        sealed = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        return EncryptedSecret(
            ciphertext=_b64e(sealed[:-_TAG_BYTES]),
            iv=_b64e(nonce),
            auth_tag=_b64e(sealed[-_TAG_BYTES:]),
            salt=_b64e(salt),
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        try:
            salt = _b64d(secret.salt)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Malformed salt") from exc
        return self._open(self._derive_key(salt), secret.ciphertext, secret.iv, secret.auth_tag)

    def decrypt_legacy(self, secret: LegacyEncryptedSecret) -> str:
        """
        Decrypt a record written under the historical fixed salt.

        .. deprecated::
            Only for the one-time migration in ``connectors.migrate_legacy``.
            New values are always written with ``encrypt``.
        """
        warnings.warn(
            "decrypt_legacy is only for migrating fixed-salt records",
            DeprecationWarning,
            stacklevel=2,
        )
        return self._open(self._derive_key(_LEGACY_SALT), secret.ciphertext, secret.iv, secret.auth_tag)

    def _open(self, key: bytes, ciphertext: str, iv: str, auth_tag: str) -> str:
        try:
            nonce = _b64d(iv)
            sealed = _b64d(ciphertext) + _b64d(auth_tag)
            if len(nonce) != _NONCE_BYTES:
                raise DecryptionError("Unexpected nonce length")
            plaintext = AESGCM(key).decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication tag did not verify") from exc
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError(f"Malformed encrypted value: {exc}") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid UTF-8") from exc
