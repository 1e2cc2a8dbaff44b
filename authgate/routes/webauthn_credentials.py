"""
Security Key Routes

WebAuthn registration and login ceremonies plus credential management.
Option blobs are returned exactly as python-fido2 produces them; the
challenge itself stays server side in the pending challenge store.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from authgate.auth import get_current_user, get_mfa_service, get_session_id, login_user
from authgate.middleware.rate_limit import MFA_VERIFY_LIMIT, limiter
from authgate.models.user import User
from authgate.schemas.webauthn import (
    AuthenticationRequest,
    AuthenticationResponse,
    CredentialDeleteResponse,
    CredentialRegistrationRequest,
    CredentialRenameRequest,
    CredentialResponse,
)
from authgate.services.mfa_service import MfaService

router = APIRouter(tags=["Security Keys"])


# ============== Registration ==============


@router.get("/registration-options")
async def registration_options(
    session_id: str = Depends(get_session_id),
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> dict[str, Any]:
    """Options for navigator.credentials.create()."""
    return await service.registration_options(session_id, current_user)


@router.post("/credentials", response_model=CredentialResponse, status_code=status.HTTP_201_CREATED)
async def register_credential(
    data: CredentialRegistrationRequest,
    session_id: str = Depends(get_session_id),
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> CredentialResponse:
    """Verify the attestation and store the new security key."""
    credential = await service.complete_registration(session_id, current_user, data.credential, data.nickname)
    return CredentialResponse.model_validate(credential)


# ============== Login ==============


@router.get("/authentication-options")
async def authentication_options(
    session_id: str = Depends(get_session_id),
    service: MfaService = Depends(get_mfa_service),
) -> dict[str, Any]:
    """Options for navigator.credentials.get() for the user awaiting login."""
    return await service.login_authentication_options(session_id)


@router.post("/authenticate", response_model=AuthenticationResponse)
@limiter.limit(MFA_VERIFY_LIMIT)
async def authenticate(
    request: Request,
    data: AuthenticationRequest,
    session_id: str = Depends(get_session_id),
    service: MfaService = Depends(get_mfa_service),
) -> AuthenticationResponse:
    """Verify an assertion against the pending challenge and sign the user in."""
    user = await service.complete_login(session_id, webauthn_response=data.credential)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Security key verification failed",
        )

    login_user(request, user)
    return AuthenticationResponse(verified=True)


# ============== Management ==============


@router.get("/credentials", response_model=list[CredentialResponse])
async def list_credentials(
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> list[CredentialResponse]:
    credentials = await service.webauthn.list_credentials(current_user)
    return [CredentialResponse.model_validate(c) for c in credentials]


@router.patch("/credentials/{credential_id}", response_model=CredentialResponse)
async def rename_credential(
    credential_id: int,
    data: CredentialRenameRequest,
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> CredentialResponse:
    credential = await service.webauthn.rename_credential(current_user, credential_id, data.nickname)
    return CredentialResponse.model_validate(credential)


@router.post("/credentials/{credential_id}/deactivate", response_model=CredentialResponse)
async def deactivate_credential(
    credential_id: int,
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> CredentialResponse:
    """Stop accepting a key without deleting it."""
    credential = await service.webauthn.deactivate_credential(current_user, credential_id)
    return CredentialResponse.model_validate(credential)


@router.delete("/credentials/{credential_id}", response_model=CredentialDeleteResponse)
async def delete_credential(
    credential_id: int,
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> CredentialDeleteResponse:
    """
    Remove a security key.

    Unknown ids and other users' keys both give deleted=false.
    """
    return CredentialDeleteResponse(deleted=await service.webauthn.remove_credential(current_user, credential_id))
