import base64
import binascii
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "AuthGate"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./authgate.db"

    # Security settings
    secret_key: str
    mfa_encryption_key: str | None = None
    session_max_age_seconds: int = 60 * 60 * 24 * 14

    # TOTP settings
    totp_issuer: str = "AuthGate"
    totp_drift_seconds: int = 30
    backup_codes_stale_after_days: int = 180

    # WebAuthn relying party
    webauthn_rp_id: str = "localhost"
    webauthn_rp_name: str = "AuthGate"
    webauthn_origins: list[str] = ["http://localhost:3000"]
    webauthn_timeout_ms: int = 60000
    webauthn_user_verification: str = "preferred"

    # Pending second-factor challenges
    pending_challenge_ttl_seconds: int = 300
    redis_url: str | None = None

    # Federated providers whose logins skip the second factor
    trusted_identity_providers: list[str] = ["google_oauth2"]

    # Rate limiting
    rate_limit_enabled: bool = True
    mfa_verify_rate_limit: str = "10/minute"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @model_validator(mode="after")
    def check_relying_party(self) -> "Settings":
        """Refuse to start with a relying-party setup no browser would accept."""
        if not self.webauthn_rp_id:
            raise ValueError("WEBAUTHN_RP_ID must be set")
        if not self.webauthn_origins:
            raise ValueError("WEBAUTHN_ORIGINS must list at least one origin")

        for origin in self.webauthn_origins:
            host = urlparse(origin).hostname
            if not host or not (host == self.webauthn_rp_id or host.endswith("." + self.webauthn_rp_id)):
                raise ValueError(f"WebAuthn origin '{origin}' does not belong to RP id '{self.webauthn_rp_id}'")

        if self.mfa_encryption_key:
            try:
                key = base64.urlsafe_b64decode(self.mfa_encryption_key)
            except (binascii.Error, ValueError) as e:
                raise ValueError("MFA_ENCRYPTION_KEY is not valid urlsafe base64") from e
            if len(key) != 32:
                raise ValueError("MFA_ENCRYPTION_KEY must decode to exactly 32 bytes")

        return self


settings = Settings()
