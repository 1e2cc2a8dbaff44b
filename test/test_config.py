"""
Tests for settings validation.
"""

import base64

import pytest
from pydantic import ValidationError

from authgate.config import Settings


def make_settings(**overrides) -> Settings:
    values = {
        "secret_key": "test-secret",
        "webauthn_rp_id": "example.com",
        "webauthn_origins": ["https://example.com"],
    }
    values.update(overrides)
    return Settings(**values)


class TestRelyingParty:
    def test_defaults_are_valid(self):
        settings = make_settings()
        assert settings.pending_challenge_ttl_seconds == 300
        assert settings.totp_drift_seconds == 30

    def test_subdomain_origin_allowed(self):
        settings = make_settings(webauthn_origins=["https://login.example.com", "https://example.com"])
        assert len(settings.webauthn_origins) == 2

    @pytest.mark.parametrize(
        "origin",
        ["https://example.org", "https://notexample.com", "not a url"],
    )
    def test_foreign_origin_rejected(self, origin: str):
        with pytest.raises(ValidationError):
            make_settings(webauthn_origins=[origin])

    def test_no_origins_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(webauthn_origins=[])

    def test_blank_rp_id_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(webauthn_rp_id="")


class TestEncryptionKey:
    def test_valid_key(self):
        key = base64.urlsafe_b64encode(b"k" * 32).decode()
        assert make_settings(mfa_encryption_key=key).mfa_encryption_key == key

    def test_wrong_length_rejected(self):
        key = base64.urlsafe_b64encode(b"k" * 16).decode()
        with pytest.raises(ValidationError):
            make_settings(mfa_encryption_key=key)

    def test_bad_base64_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(mfa_encryption_key="!!!not-base64!!!")
