"""
Second Factor Orchestration

Policy layer the routes talk to: decides whether a user needs a second
factor, routes a submitted factor to the right engine, and drives the
pending-challenge slot through the login and registration ceremonies.
"""

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.exceptions import (
    NoActiveChallengeError,
    SecondFactorNotAllowedError,
    TotpAlreadyEnabledError,
)
from authgate.models.user import User
from authgate.models.webauthn_credential import WebAuthnCredential
from authgate.services.ports import PendingChallengeStore, TotpEngine, WebAuthnEngine
from authgate.services.totp_service import TotpService
from authgate.services.webauthn_service import WebAuthnService
from authgate.utils.challenge_store import ChallengePurpose

logger = logging.getLogger(__name__)

LOGIN_PURPOSES = (ChallengePurpose.LOGIN, ChallengePurpose.AUTHENTICATION)


class MfaService:
    """Entry point for every second-factor decision."""

    def __init__(
        self,
        db: AsyncSession,
        store: PendingChallengeStore,
        totp: TotpEngine | None = None,
        webauthn: WebAuthnEngine | None = None,
    ):
        self.db = db
        self.store = store
        self.totp = totp or TotpService(db)
        self.webauthn = webauthn or WebAuthnService(db)

    # ============== Policy ==============

    def bypasses_second_factor(self, user: User) -> bool:
        """
        Users signed in through a trusted identity provider skip the second
        factor; their provider is assumed to have done its own checks.
        """
        return user.from_federated_login and user.provider in settings.trusted_identity_providers

    async def requires_second_factor(self, user: User) -> bool:
        if self.bypasses_second_factor(user):
            return False
        if user.totp_enabled:
            return True
        return await self.webauthn.has_active_credentials(user)

    def _ensure_may_manage_totp(self, user: User) -> None:
        if self.bypasses_second_factor(user):
            raise SecondFactorNotAllowedError()

    # ============== Verification ==============

    async def verify_second_factor(
        self,
        user: User,
        code: str | None = None,
        webauthn_response: Mapping[str, Any] | None = None,
        challenge: str | None = None,
    ) -> bool:
        """
        Check whichever factor was submitted.

        A WebAuthn response wins when present. Otherwise the code is tried
        as a TOTP code, then as a backup code, and only once authenticator
        app 2FA has been enabled. Blank input fails without reaching either
        engine.
        """
        user_id = user.id
        if webauthn_response:
            if not challenge:
                logger.warning(
                    f"Security key response for user {user_id} without a challenge",
                    extra={"user_id": user_id, "reason": "missing_challenge"},
                )
                return False
            return await self.webauthn.verify_authentication(user, webauthn_response, challenge)

        if not code or not code.strip():
            return False

        if not user.totp_enabled:
            # A seed from an unfinished setup is not a factor yet
            logger.warning(
                f"Code submitted for user {user_id} without authenticator app 2FA",
                extra={"user_id": user_id, "reason": "totp_not_enabled"},
            )
            return False

        if self.totp.verify_code(user, code):
            return True

        if await self.totp.verify_and_consume_backup_code(user, code):
            return True

        logger.warning(
            f"Second factor rejected for user {user_id}",
            extra={"user_id": user_id, "reason": "invalid_code"},
        )
        return False

    # ============== Login Flow ==============

    async def begin_login(self, session_id: str, user: User) -> bool:
        """
        Called once the first factor has passed.

        Returns True when a second factor is now pending for this session,
        False when the user can be signed in straight away.
        """
        if not await self.requires_second_factor(user):
            await self.store.clear(session_id)
            return False

        await self.store.put(session_id, user.id, purpose=ChallengePurpose.LOGIN)
        logger.info(f"Second factor pending for user {user.id}", extra={"user_id": user.id})
        return True

    async def pending_user(self, session_id: str) -> User | None:
        entry = await self.store.peek(session_id)
        if entry is None or entry.purpose not in LOGIN_PURPOSES:
            return None
        return await self.db.get(User, entry.user_id)

    async def login_authentication_options(self, session_id: str) -> dict[str, Any]:
        """Issue a fresh WebAuthn challenge for the user awaiting login."""
        entry = await self.store.peek(session_id)
        user = await self.pending_user(session_id)
        if entry is None or user is None:
            raise NoActiveChallengeError()

        options, challenge = await self.webauthn.authentication_options(user)
        await self.store.put(
            session_id,
            user.id,
            challenge=challenge,
            purpose=ChallengePurpose.AUTHENTICATION,
            created_at=entry.created_at,
        )
        return options

    async def complete_login(
        self,
        session_id: str,
        code: str | None = None,
        webauthn_response: Mapping[str, Any] | None = None,
    ) -> User | None:
        """
        Consume the pending slot and verify the submitted factor.

        Returns the user on success. On failure the challenge that was taken
        stays gone; only an identity slot is put back so the user can try a
        code again or ask for a new security key challenge. The slot keeps its
        original deadline, so failed attempts never extend the login window.

        Raises:
            NoActiveChallengeError: no login is pending for this session
        """
        entry = await self.store.take_and_clear(session_id)
        if entry.purpose not in LOGIN_PURPOSES:
            raise NoActiveChallengeError()

        user = await self.db.get(User, entry.user_id)
        if user is None:
            raise NoActiveChallengeError()

        if await self.verify_second_factor(user, code, webauthn_response, entry.challenge):
            logger.info(f"Second factor completed for user {entry.user_id}", extra={"user_id": entry.user_id})
            return user

        await self.store.put(session_id, entry.user_id, purpose=ChallengePurpose.LOGIN, created_at=entry.created_at)
        return None

    # ============== Security Key Registration ==============

    async def registration_options(self, session_id: str, user: User) -> dict[str, Any]:
        options, challenge = await self.webauthn.registration_options(user)
        await self.store.put(session_id, user.id, challenge=challenge, purpose=ChallengePurpose.REGISTRATION)
        return options

    async def complete_registration(
        self,
        session_id: str,
        user: User,
        client_response: Mapping[str, Any],
        nickname: str | None = None,
    ) -> WebAuthnCredential:
        entry = await self.store.take_and_clear(session_id)
        if entry.purpose != ChallengePurpose.REGISTRATION or entry.user_id != user.id:
            raise NoActiveChallengeError()
        return await self.webauthn.verify_registration(user, client_response, entry.challenge, nickname)

    # ============== Authenticator App Management ==============

    async def setup_totp(self, user: User) -> dict[str, Any]:
        """Provision a fresh seed and return what the setup screen shows once."""
        self._ensure_may_manage_totp(user)
        if user.totp_enabled:
            raise TotpAlreadyEnabledError()

        secret = await self.totp.generate_secret(user)
        return {
            "secret": secret,
            "provisioning_uri": self.totp.provisioning_uri(user),
            "qr_code_svg": self.totp.generate_qr_code(user),
        }

    async def enable_totp(self, user: User, code: str | None) -> list[str] | None:
        """None on a wrong code, otherwise the newly issued backup codes."""
        self._ensure_may_manage_totp(user)
        return await self.totp.enable_and_issue_codes(user, code)

    async def disable_totp(self, user: User) -> bool:
        self._ensure_may_manage_totp(user)
        return await self.totp.disable(user)

    async def regenerate_backup_codes(self, user: User) -> list[str]:
        self._ensure_may_manage_totp(user)
        return await self.totp.regenerate_backup_codes(user)

    async def status(self, user: User) -> dict[str, Any]:
        return {
            "totp_enabled": user.totp_enabled,
            "webauthn_enabled": await self.webauthn.has_active_credentials(user),
            "second_factor_required": await self.requires_second_factor(user),
            "federated_bypass": self.bypasses_second_factor(user),
            "backup_codes_remaining": self.totp.remaining_backup_codes(user),
            "backup_codes_stale": self.totp.backup_codes_stale(user) if user.totp_enabled else False,
        }
