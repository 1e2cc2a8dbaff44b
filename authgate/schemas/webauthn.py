"""
Security Key Schemas

Pydantic models for WebAuthn ceremonies and credential management.
Browser payloads are passed through as plain dicts; python-fido2 parses them.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CredentialRegistrationRequest(BaseModel):
    """Result of navigator.credentials.create(), JSON encoded"""

    credential: dict[str, Any] = Field(..., description="PublicKeyCredential serialized by the browser")
    nickname: str | None = Field(None, max_length=100)


class AuthenticationRequest(BaseModel):
    """Result of navigator.credentials.get(), JSON encoded"""

    credential: dict[str, Any]


class AuthenticationResponse(BaseModel):
    verified: bool


class CredentialRenameRequest(BaseModel):
    nickname: str = Field(..., min_length=1, max_length=100)

    @field_validator("nickname")
    @classmethod
    def nickname_not_blank(cls, v):
        if not v.strip():
            raise ValueError("Nickname must not be blank")
        return v.strip()


class CredentialResponse(BaseModel):
    """A registered security key, without key material"""

    id: int
    nickname: str
    active: bool
    security_level: str
    sign_count: int
    last_used_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CredentialDeleteResponse(BaseModel):
    deleted: bool
