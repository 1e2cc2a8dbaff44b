from .two_factor import (
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
from .webauthn import (
    AuthenticationRequest,
    AuthenticationResponse,
    CredentialDeleteResponse,
    CredentialRegistrationRequest,
    CredentialRenameRequest,
    CredentialResponse,
)

# Define the public API of this module
__all__ = [
    "BackupCodesResponse",
    "LoginMethodsResponse",
    "LoginVerifyRequest",
    "LoginVerifyResponse",
    "TotpDisableResponse",
    "TotpEnableResponse",
    "TotpSetupResponse",
    "TwoFactorStatus",
    "VerifyCodeRequest",
    "VerifyResponse",
    "AuthenticationRequest",
    "AuthenticationResponse",
    "CredentialDeleteResponse",
    "CredentialRegistrationRequest",
    "CredentialRenameRequest",
    "CredentialResponse",
]
