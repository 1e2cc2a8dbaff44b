"""
Custom Exception Classes for AuthGate

This module defines custom exceptions for better error handling and
consistent error responses across the application.
"""

import enum
from typing import Any

from fastapi import status


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes returned in the error envelope."""

    AUTH_FAILED = "AUTH_FAILED"
    AUTH_PERMISSION_DENIED = "AUTH_PERMISSION_DENIED"
    MFA_INVALID_CODE = "MFA_INVALID_CODE"
    MFA_NO_SECRET = "MFA_NO_SECRET"
    MFA_NOT_ENABLED = "MFA_NOT_ENABLED"
    MFA_ALREADY_ENABLED = "MFA_ALREADY_ENABLED"
    MFA_NOT_ALLOWED = "MFA_NOT_ALLOWED"
    MFA_NO_ACTIVE_CHALLENGE = "MFA_NO_ACTIVE_CHALLENGE"
    MFA_SECRET_TAMPERED = "MFA_SECRET_TAMPERED"
    WEBAUTHN_REGISTRATION_FAILED = "WEBAUTHN_REGISTRATION_FAILED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_DUPLICATE_RESOURCE = "VALIDATION_DUPLICATE_RESOURCE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class AuthGateException(Exception):
    """Base exception class for all AuthGate exceptions"""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Secret storage
# ============================================================================


class InvalidSecretTokenError(AuthGateException):
    """Raised when a sealed secret fails authentication or cannot be decoded"""

    error_code = ErrorCode.MFA_SECRET_TAMPERED

    def __init__(self, purpose: str):
        self.purpose = purpose
        super().__init__(
            message="Stored secret could not be opened",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"purpose": purpose},
        )


# ============================================================================
# Second factor
# ============================================================================


class NoTotpSecretError(AuthGateException):
    """Raised when a TOTP operation needs a seed the user does not have"""

    error_code = ErrorCode.MFA_NO_SECRET

    def __init__(self, message: str = "No authenticator app secret has been provisioned"):
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST)


class TotpNotEnabledError(AuthGateException):
    """Raised when an operation requires authenticator-app 2FA to be enabled"""

    error_code = ErrorCode.MFA_NOT_ENABLED

    def __init__(self, message: str = "Authenticator app two-factor authentication is not enabled"):
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST)


class TotpAlreadyEnabledError(AuthGateException):
    """Raised when setup is requested while authenticator-app 2FA is already on"""

    error_code = ErrorCode.MFA_ALREADY_ENABLED

    def __init__(self, message: str = "Authenticator app two-factor authentication is already enabled"):
        super().__init__(message=message, status_code=status.HTTP_409_CONFLICT)


class SecondFactorNotAllowedError(AuthGateException):
    """Raised when a federated-login user tries to manage a second factor"""

    error_code = ErrorCode.MFA_NOT_ALLOWED

    def __init__(self, message: str = "Accounts signed in through a trusted provider do not use a second factor"):
        super().__init__(message=message, status_code=status.HTTP_403_FORBIDDEN)


class NoActiveChallengeError(AuthGateException):
    """Raised when a pending challenge is taken from an empty or expired slot"""

    error_code = ErrorCode.MFA_NO_ACTIVE_CHALLENGE

    def __init__(self, message: str = "No verification is in progress. Please start again."):
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST)


class WebAuthnErrorCategory(str, enum.Enum):
    """User-facing categories a registration failure is reduced to."""

    ALREADY_REGISTERED = "already_registered"
    TIMED_OUT = "timed_out"
    NOT_ALLOWED = "not_allowed"
    VERIFICATION_FAILED = "verification_failed"
    GENERIC = "generic"


WEBAUTHN_ERROR_MESSAGES: dict[WebAuthnErrorCategory, str] = {
    WebAuthnErrorCategory.ALREADY_REGISTERED: (
        "This security key is already registered. Please use a different security key."
    ),
    WebAuthnErrorCategory.TIMED_OUT: "The security key operation timed out. Please try again.",
    WebAuthnErrorCategory.NOT_ALLOWED: "The security key operation was not allowed. Please try again.",
    WebAuthnErrorCategory.VERIFICATION_FAILED: (
        "The security key could not be verified. Please use the correct security key."
    ),
    WebAuthnErrorCategory.GENERIC: "Failed to register the security key.",
}


def categorize_webauthn_error(error: BaseException | str) -> WebAuthnErrorCategory:
    """Map a low-level WebAuthn failure onto a non-leaking category."""
    text = str(error).lower()

    if "already registered" in text or "invalidstateerror" in text:
        return WebAuthnErrorCategory.ALREADY_REGISTERED
    if "timeout" in text or "timed out" in text or "expired" in text:
        return WebAuthnErrorCategory.TIMED_OUT
    if "not allowed" in text or "notallowederror" in text:
        return WebAuthnErrorCategory.NOT_ALLOWED
    if any(marker in text for marker in ("invalid", "verification failed", "mismatch", "signature", "wrong")):
        return WebAuthnErrorCategory.VERIFICATION_FAILED
    return WebAuthnErrorCategory.GENERIC


class WebAuthnRegistrationError(AuthGateException):
    """Raised when a security key registration cannot be completed"""

    error_code = ErrorCode.WEBAUTHN_REGISTRATION_FAILED

    def __init__(self, category: WebAuthnErrorCategory = WebAuthnErrorCategory.GENERIC):
        self.category = category
        super().__init__(
            message=WEBAUTHN_ERROR_MESSAGES[category],
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"category": category.value},
        )

    @classmethod
    def from_error(cls, error: BaseException | str) -> "WebAuthnRegistrationError":
        return cls(categorize_webauthn_error(error))


# ============================================================================
# Resource Exceptions
# ============================================================================


class CredentialNotFoundError(AuthGateException):
    """Raised when a security key does not exist for the current user"""

    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, credential_id: Any | None = None):
        super().__init__(
            message="Security key not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": "WebAuthnCredential", "resource_id": credential_id},
        )


class DuplicateNicknameError(AuthGateException):
    """Raised when a user already has a security key with the given nickname"""

    error_code = ErrorCode.VALIDATION_DUPLICATE_RESOURCE

    def __init__(self, nickname: str):
        super().__init__(
            message=f"A security key named '{nickname}' already exists",
            status_code=status.HTTP_409_CONFLICT,
            details={"field": "nickname", "value": nickname},
        )


class AuthenticationError(AuthGateException):
    """Raised when the request carries no usable session identity"""

    error_code = ErrorCode.AUTH_FAILED

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message=message, status_code=status.HTTP_401_UNAUTHORIZED)


# ============================================================================
# Configuration
# ============================================================================


class ConfigurationError(AuthGateException):
    """Raised at startup when required configuration is missing or invalid"""

    error_code = ErrorCode.CONFIGURATION_ERROR

    def __init__(self, message: str):
        super().__init__(message=message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
