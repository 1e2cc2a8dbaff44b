"""
Authenticator App Schemas

Pydantic models for TOTP setup, verification and backup code responses.
"""

from typing import Any

from pydantic import BaseModel, Field


class TwoFactorStatus(BaseModel):
    """Second factor summary for the account screen"""

    totp_enabled: bool
    webauthn_enabled: bool
    second_factor_required: bool
    federated_bypass: bool
    backup_codes_remaining: int
    backup_codes_stale: bool


class TotpSetupResponse(BaseModel):
    """Shown once when a new seed is provisioned"""

    secret: str
    provisioning_uri: str
    qr_code_svg: str | None = None
    message: str


class VerifyCodeRequest(BaseModel):
    """A 6-digit TOTP code or a backup code"""

    code: str = Field(..., max_length=64, description="Authenticator app or backup code")


class VerifyResponse(BaseModel):
    valid: bool
    message: str


class TotpEnableResponse(BaseModel):
    """Backup codes are only present the first time 2FA is enabled"""

    enabled: bool
    backup_codes: list[str]
    message: str


class TotpDisableResponse(BaseModel):
    disabled: bool
    message: str


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]
    message: str


class LoginMethodsResponse(BaseModel):
    """Factors the user waiting at the second login step can use"""

    totp: bool
    webauthn: bool


class LoginVerifyRequest(BaseModel):
    """Second step of login: a code, or a security key assertion"""

    code: str | None = Field(None, max_length=64)
    webauthn_response: dict[str, Any] | None = None


class LoginVerifyResponse(BaseModel):
    authenticated: bool
    user_id: int
    message: str
