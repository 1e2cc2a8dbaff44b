from .user import User
from .webauthn_credential import WebAuthnCredential

__all__ = [
    "User",
    "WebAuthnCredential",
]
