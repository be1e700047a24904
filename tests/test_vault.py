"""
Tests for the credential vault.
"""

import base64

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from connectors.errors import ConfigurationError, DecryptionError
from connectors.vault import (
    CredentialVault,
    EncryptedSecret,
    LegacyEncryptedSecret,
    is_legacy_secret,
)

SECRET = "s" * 32


def _flip_first_byte(value: str) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


def _legacy_record(master: str, plaintext: str) -> dict:
    key = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"calendar-token-encryption-salt",
        iterations=100_000,
    ).derive(master.encode())
    nonce = b"\x07" * 12
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode(), None)
    return {
        "ciphertext": base64.b64encode(sealed[:-16]).decode(),
        "iv": base64.b64encode(nonce).decode(),
        "authTag": base64.b64encode(sealed[-16:]).decode(),
    }


class TestVaultConfiguration:
    def test_missing_master_secret(self):
        with pytest.raises(ConfigurationError):
            CredentialVault("")

    def test_none_master_secret(self):
        with pytest.raises(ConfigurationError):
            CredentialVault(None)

    def test_short_master_secret(self):
        with pytest.raises(ConfigurationError, match="32"):
            CredentialVault("x" * 31)

    def test_minimum_length_accepted(self):
        CredentialVault("x" * 32)


class TestEncryptDecrypt:
    def test_round_trip(self):
        vault = CredentialVault(SECRET)
        secret = vault.encrypt("ya29.token-value")
        assert vault.decrypt(secret) == "ya29.token-value"

    def test_round_trip_unicode(self):
        vault = CredentialVault(SECRET)
        assert vault.decrypt(vault.encrypt("pässwörd ✓")) == "pässwörd ✓"

    def test_fresh_salt_nonce_and_ciphertext_per_call(self):
        vault = CredentialVault(SECRET)
        a = vault.encrypt("same")
        b = vault.encrypt("same")
        assert a.salt != b.salt
        assert a.iv != b.iv
        assert a.ciphertext != b.ciphertext

    def test_component_sizes(self):
        secret = CredentialVault(SECRET).encrypt("value")
        assert len(base64.b64decode(secret.salt)) == 16
        assert len(base64.b64decode(secret.iv)) == 12
        assert len(base64.b64decode(secret.auth_tag)) == 16

    def test_stored_shape_uses_auth_tag_alias(self):
        stored = CredentialVault(SECRET).encrypt("value").to_dict()
        assert set(stored) == {"ciphertext", "iv", "authTag", "salt"}
        assert EncryptedSecret.from_dict(stored).auth_tag == stored["authTag"]

    def test_plaintext_not_in_stored_shape(self):
        stored = CredentialVault(SECRET).encrypt("very-secret-refresh-token").to_dict()
        assert "very-secret-refresh-token" not in str(stored)

    @pytest.mark.parametrize("field", ["ciphertext", "iv", "auth_tag", "salt"])
    def test_single_byte_tamper_is_detected(self, field):
        vault = CredentialVault(SECRET)
        secret = vault.encrypt("tamper me")
        tampered = secret.model_copy(update={field: _flip_first_byte(getattr(secret, field))})
        with pytest.raises(DecryptionError):
            vault.decrypt(tampered)

    def test_wrong_master_secret(self):
        secret = CredentialVault(SECRET).encrypt("value")
        with pytest.raises(DecryptionError):
            CredentialVault("t" * 32).decrypt(secret)

    def test_malformed_base64(self):
        vault = CredentialVault(SECRET)
        secret = vault.encrypt("value").model_copy(update={"iv": "not base64!!"})
        with pytest.raises(DecryptionError):
            vault.decrypt(secret)

    def test_partial_secret_rejected(self):
        with pytest.raises(ValidationError):
            EncryptedSecret.from_dict({"ciphertext": "YQ==", "iv": "YQ==", "authTag": "YQ=="})
        with pytest.raises(ValidationError):
            EncryptedSecret.from_dict({"ciphertext": "YQ==", "iv": "YQ==", "authTag": "", "salt": "YQ=="})


class TestLegacyDecrypt:
    def test_decrypts_fixed_salt_record(self):
        vault = CredentialVault(SECRET)
        record = _legacy_record(SECRET, "old-token")
        with pytest.warns(DeprecationWarning):
            assert vault.decrypt_legacy(LegacyEncryptedSecret.model_validate(record)) == "old-token"

    def test_legacy_detection(self):
        assert is_legacy_secret({"ciphertext": "a", "iv": "b", "authTag": "c"})
        assert not is_legacy_secret({"ciphertext": "a", "iv": "b", "authTag": "c", "salt": "d"})
        assert not is_legacy_secret(None)
        assert not is_legacy_secret({})
