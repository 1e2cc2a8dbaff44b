"""
Two-Factor Authentication Routes

API endpoints for authenticator app setup, verification, backup codes
and the second step of login.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from authgate.auth import get_current_user, get_mfa_service, get_pending_user, get_session_id, login_user
from authgate.middleware.rate_limit import MFA_VERIFY_LIMIT, limiter
from authgate.models.user import User
from authgate.schemas.two_factor import (
    BackupCodesResponse,
    LoginMethodsResponse,
    LoginVerifyRequest,
    LoginVerifyResponse,
    TotpDisableResponse,
    TotpEnableResponse,
    TotpSetupResponse,
    TwoFactorStatus,
    VerifyCodeRequest,
    VerifyResponse,
)
from authgate.services.mfa_service import MfaService

router = APIRouter(tags=["Two-Factor Authentication"])


# ============== Status & Setup ==============


@router.get("/status", response_model=TwoFactorStatus)
async def get_2fa_status(
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> TwoFactorStatus:
    """Current second factor state for the signed-in user."""
    return TwoFactorStatus(**await service.status(current_user))


@router.post("/setup", response_model=TotpSetupResponse)
async def setup_2fa(
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> TotpSetupResponse:
    """
    Start authenticator app setup.

    Returns a new secret and QR code. Calling this again replaces the
    secret; the user must then call /enable with a valid code.
    """
    result = await service.setup_totp(current_user)
    return TotpSetupResponse(
        **result,
        message="Scan the QR code with your authenticator app, then confirm with a code.",
    )


@router.post("/enable", response_model=TotpEnableResponse)
@limiter.limit(MFA_VERIFY_LIMIT)
async def enable_2fa(
    request: Request,
    data: VerifyCodeRequest,
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> TotpEnableResponse:
    """
    Complete setup by verifying a TOTP code.

    IMPORTANT: Backup codes are only shown once - save them securely!
    """
    codes = await service.enable_totp(current_user, data.code)
    if codes is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid verification code",
        )

    return TotpEnableResponse(
        enabled=True,
        backup_codes=codes,
        message="Two-factor authentication has been enabled",
    )


# ============== Verification ==============


@router.post("/verify", response_model=VerifyResponse)
@limiter.limit(MFA_VERIFY_LIMIT)
async def verify_2fa_code(
    request: Request,
    data: VerifyCodeRequest,
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> VerifyResponse:
    """Check a TOTP code for the signed-in user without consuming anything."""
    if not service.totp.verify_code(current_user, data.code):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid verification code",
        )

    return VerifyResponse(valid=True, message="Code verified successfully")


@router.get("/login", response_model=LoginMethodsResponse)
async def login_methods(
    service: MfaService = Depends(get_mfa_service),
    pending_user: User = Depends(get_pending_user),
) -> LoginMethodsResponse:
    """Which second factors the pending login can be completed with."""
    return LoginMethodsResponse(
        totp=pending_user.totp_enabled,
        webauthn=await service.webauthn.has_active_credentials(pending_user),
    )


@router.post("/login/verify", response_model=LoginVerifyResponse)
@limiter.limit(MFA_VERIFY_LIMIT)
async def verify_login(
    request: Request,
    data: LoginVerifyRequest,
    session_id: str = Depends(get_session_id),
    service: MfaService = Depends(get_mfa_service),
) -> LoginVerifyResponse:
    """
    Second step of login.

    Accepts a TOTP code, a backup code, or a security key assertion for
    the challenge issued by /webauthn/authentication-options.
    """
    user = await service.complete_login(session_id, code=data.code, webauthn_response=data.webauthn_response)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid verification code",
        )

    login_user(request, user)
    return LoginVerifyResponse(authenticated=True, user_id=user.id, message="Signed in")


# ============== Management ==============


@router.post("/disable", response_model=TotpDisableResponse)
async def disable_2fa(
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> TotpDisableResponse:
    """Turn off the authenticator app and discard its backup codes."""
    if not await service.disable_totp(current_user):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to disable two-factor authentication",
        )

    return TotpDisableResponse(disabled=True, message="Two-factor authentication has been disabled")


@router.post("/backup-codes/regenerate", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    service: MfaService = Depends(get_mfa_service),
    current_user: User = Depends(get_current_user),
) -> BackupCodesResponse:
    """
    Regenerate backup codes.

    This invalidates all existing backup codes.
    """
    codes = await service.regenerate_backup_codes(current_user)
    return BackupCodesResponse(
        backup_codes=codes,
        message="New backup codes generated. Save them securely - they won't be shown again!",
    )
