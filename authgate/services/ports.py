"""Second-factor ports (protocols).

Interfaces the orchestration layer depends on. Each has exactly one
production implementation (TotpService, WebAuthnService and the two
challenge stores), and tests may substitute their own.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from authgate.models.user import User
    from authgate.models.webauthn_credential import WebAuthnCredential
    from authgate.utils.challenge_store import ChallengePurpose, PendingChallenge


@runtime_checkable
class TotpEngine(Protocol):
    """Authenticator-app codes plus single-use backup codes."""

    async def generate_secret(self, user: User) -> str:
        """Provision and persist a new sealed seed; return it in plaintext once."""
        ...

    def provisioning_uri(self, user: User, issuer_name: str | None = None) -> str:
        """otpauth:// URI for the user's seed.

        Raises:
            NoTotpSecretError: no seed is provisioned.
        """
        ...

    def verify_code(self, user: User, code: str | None, drift_seconds: int | None = None) -> bool:
        """True when code matches any step in [now - drift, now + drift]."""
        ...

    async def generate_backup_codes(self, user: User) -> list[str]:
        ...

    async def verify_and_consume_backup_code(self, user: User, code: str | None) -> bool:
        ...

    async def enable(self, user: User, verification_code: str | None) -> bool:
        ...

    async def enable_and_issue_codes(self, user: User, verification_code: str | None) -> list[str] | None:
        """None on a wrong code, otherwise the backup codes issued by this call."""
        ...

    async def regenerate_backup_codes(self, user: User) -> list[str]:
        ...

    async def disable(self, user: User) -> bool:
        ...

    def generate_qr_code(self, user: User, issuer_name: str | None = None) -> str | None:
        ...

    def remaining_backup_codes(self, user: User) -> int:
        ...

    def backup_codes_stale(self, user: User, max_age_days: int | None = None) -> bool:
        ...


@runtime_checkable
class WebAuthnEngine(Protocol):
    """Security key registration and assertion checks."""

    async def registration_options(self, user: User) -> tuple[dict[str, Any], str]:
        """Browser `create()` options and the challenge the caller must hold."""
        ...

    async def authentication_options(self, user: User) -> tuple[dict[str, Any], str]:
        """Browser `get()` options and the challenge the caller must hold."""
        ...

    async def verify_registration(
        self, user: User, client_response: Mapping[str, Any], challenge: str, nickname: str | None = None
    ) -> WebAuthnCredential:
        """Persist a new credential or raise WebAuthnRegistrationError."""
        ...

    async def verify_authentication(self, user: User, client_response: Mapping[str, Any], challenge: str) -> bool:
        ...

    async def remove_credential(self, user: User, credential_id: int) -> bool:
        ...

    async def has_active_credentials(self, user: User) -> bool:
        ...


@runtime_checkable
class PendingChallengeStore(Protocol):
    """Per-session, take-once challenge slot."""

    async def put(
        self,
        session_id: str,
        user_id: int,
        challenge: str | None = None,
        purpose: ChallengePurpose = ...,
        created_at: float | None = None,
    ) -> PendingChallenge:
        ...

    async def take_and_clear(self, session_id: str) -> PendingChallenge:
        """Return and erase the entry.

        Raises:
            NoActiveChallengeError: nothing stored, already taken, or expired.
        """
        ...

    async def peek(self, session_id: str) -> PendingChallenge | None:
        ...

    async def clear(self, session_id: str) -> bool:
        ...


__all__: list[str] = [
    "TotpEngine",
    "WebAuthnEngine",
    "PendingChallengeStore",
]
