"""
Tests for the secret vault.
"""

import base64
import logging

import pytest

from authgate.exceptions import ConfigurationError, InvalidSecretTokenError
from authgate.utils.secret_vault import SecretPurpose, SecretVault, derive_key


def _flip_byte(token: str, index: int) -> str:
    raw = bytearray(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
    raw[index] ^= 0x01
    return base64.urlsafe_b64encode(bytes(raw)).rstrip(b"=").decode("ascii")


class TestSealAndOpen:
    @pytest.mark.parametrize("plaintext", ["JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP", "", "ünïcødé ✓"])
    def test_round_trip(self, vault: SecretVault, plaintext: str):
        token = vault.seal(plaintext, SecretPurpose.TOTP_SEED)
        assert vault.open(token, SecretPurpose.TOTP_SEED) == plaintext

    def test_token_does_not_contain_plaintext(self, vault: SecretVault):
        token = vault.seal("JBSWY3DPEHPK3PXP", SecretPurpose.TOTP_SEED)
        assert "JBSWY3DPEHPK3PXP" not in token

    def test_each_seal_uses_a_fresh_nonce(self, vault: SecretVault):
        first = vault.seal("same", SecretPurpose.TOTP_SEED)
        second = vault.seal("same", SecretPurpose.TOTP_SEED)
        assert first != second

    def test_json_round_trip(self, vault: SecretVault):
        codes = ["abcd1234", "efgh5678"]
        token = vault.seal_json(codes, SecretPurpose.BACKUP_CODES)
        assert vault.open_json(token, SecretPurpose.BACKUP_CODES) == codes


class TestFailClosed:
    def test_wrong_purpose_fails(self, vault: SecretVault):
        token = vault.seal("seed", SecretPurpose.TOTP_SEED)
        with pytest.raises(InvalidSecretTokenError):
            vault.open(token, SecretPurpose.BACKUP_CODES)

    def test_tampered_ciphertext_fails(self, vault: SecretVault):
        token = vault.seal("seed", SecretPurpose.TOTP_SEED)
        with pytest.raises(InvalidSecretTokenError):
            vault.open(_flip_byte(token, -1), SecretPurpose.TOTP_SEED)

    def test_tampered_nonce_fails(self, vault: SecretVault):
        token = vault.seal("seed", SecretPurpose.TOTP_SEED)
        with pytest.raises(InvalidSecretTokenError):
            vault.open(_flip_byte(token, 3), SecretPurpose.TOTP_SEED)

    def test_truncated_token_fails(self, vault: SecretVault):
        token = vault.seal("seed", SecretPurpose.TOTP_SEED)
        with pytest.raises(InvalidSecretTokenError):
            vault.open(token[:20], SecretPurpose.TOTP_SEED)

    @pytest.mark.parametrize("token", ["", "not-a-token", "%%%%"])
    def test_garbage_fails(self, vault: SecretVault, token: str):
        with pytest.raises(InvalidSecretTokenError):
            vault.open(token, SecretPurpose.TOTP_SEED)

    def test_other_key_fails(self, vault: SecretVault):
        token = vault.seal("seed", SecretPurpose.TOTP_SEED)
        other = SecretVault(derive_key("a-completely-different-secret"))
        with pytest.raises(InvalidSecretTokenError):
            other.open(token, SecretPurpose.TOTP_SEED)

    def test_failure_log_names_purpose_only(self, vault: SecretVault, caplog):
        token = vault.seal("JBSWY3DPEHPK3PXP", SecretPurpose.TOTP_SEED)

        with caplog.at_level(logging.ERROR, logger="authgate.utils.secret_vault"):
            with pytest.raises(InvalidSecretTokenError) as exc_info:
                vault.open(token, SecretPurpose.BACKUP_CODES)

        assert "backup_codes" in caplog.text
        assert "JBSWY3DPEHPK3PXP" not in caplog.text
        assert token not in caplog.text
        assert exc_info.value.details == {"purpose": "backup_codes"}


class TestKeys:
    def test_derive_key_is_deterministic(self):
        assert derive_key("secret") == derive_key("secret")
        assert len(derive_key("secret")) == 32
        assert derive_key("secret") != derive_key("other")

    def test_derive_key_requires_secret(self):
        with pytest.raises(ConfigurationError):
            derive_key("")

    def test_vault_rejects_short_key(self):
        with pytest.raises(ConfigurationError):
            SecretVault(b"too-short")
