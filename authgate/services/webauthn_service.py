"""
Security Key (WebAuthn) Service

Registration and assertion ceremonies on top of python-fido2's Fido2Server.
The server object never holds state between calls: the only thing carried
from the options step to the verify step is the challenge string, which the
caller keeps in the pending challenge store.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from cryptography.exceptions import InvalidSignature
from fido2 import cbor
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    Aaguid,
    AttestedCredentialData,
    AuthenticationResponse,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.exceptions import (
    CredentialNotFoundError,
    DuplicateNicknameError,
    WebAuthnErrorCategory,
    WebAuthnRegistrationError,
)
from authgate.models.user import User
from authgate.models.webauthn_credential import WebAuthnCredential

logger = logging.getLogger(__name__)

DEFAULT_NICKNAME = "Security key {number}"

# Everything fido2 raises for a malformed or mismatching ceremony
CEREMONY_ERRORS = (ValueError, TypeError, KeyError, InvalidSignature)


def build_fido2_server() -> Fido2Server:
    """Relying party built from settings; origins must match exactly."""
    allowed_origins = frozenset(settings.webauthn_origins)
    server = Fido2Server(
        PublicKeyCredentialRpEntity(id=settings.webauthn_rp_id, name=settings.webauthn_rp_name),
        verify_origin=lambda origin: origin in allowed_origins,
    )
    server.timeout = settings.webauthn_timeout_ms
    return server


def _descriptor(credential: WebAuthnCredential) -> PublicKeyCredentialDescriptor:
    return PublicKeyCredentialDescriptor(
        type=PublicKeyCredentialType.PUBLIC_KEY,
        id=websafe_decode(credential.external_id),
    )


def _attested_data(credential: WebAuthnCredential) -> AttestedCredentialData:
    public_key = CoseKey.parse(cbor.decode(credential.public_key))
    return AttestedCredentialData.create(Aaguid.NONE, websafe_decode(credential.external_id), public_key)


class WebAuthnService:
    """Service for registering and verifying security keys."""

    def __init__(self, db: AsyncSession, server: Fido2Server | None = None):
        self.db = db
        self.server = server or build_fido2_server()
        self.user_verification = UserVerificationRequirement(settings.webauthn_user_verification)

    # ============== Queries ==============

    async def _credentials(self, user: User, active_only: bool = False) -> list[WebAuthnCredential]:
        query = select(WebAuthnCredential).where(WebAuthnCredential.user_id == user.id)
        if active_only:
            query = query.where(WebAuthnCredential.active.is_(True))
        result = await self.db.execute(query.order_by(WebAuthnCredential.created_at, WebAuthnCredential.id))
        return list(result.scalars().all())

    async def list_credentials(self, user: User) -> list[WebAuthnCredential]:
        return await self._credentials(user)

    async def has_active_credentials(self, user: User) -> bool:
        result = await self.db.execute(
            select(func.count(WebAuthnCredential.id)).where(
                WebAuthnCredential.user_id == user.id,
                WebAuthnCredential.active.is_(True),
            )
        )
        return result.scalar_one() > 0

    async def get_credential(self, user: User, credential_id: int) -> WebAuthnCredential:
        """Fetch one of the user's credentials, never another user's."""
        result = await self.db.execute(
            select(WebAuthnCredential).where(
                WebAuthnCredential.id == credential_id,
                WebAuthnCredential.user_id == user.id,
            )
        )
        credential = result.scalar_one_or_none()
        if not credential:
            raise CredentialNotFoundError(credential_id)
        return credential

    # ============== Registration ==============

    async def registration_options(self, user: User) -> tuple[dict[str, Any], str]:
        """
        Options for navigator.credentials.create().

        The user's active credentials go in the exclude list so the same
        authenticator is not registered twice.
        """
        existing = await self._credentials(user, active_only=True)
        options, state = self.server.register_begin(
            PublicKeyCredentialUserEntity(
                id=user.webauthn_id.encode("utf-8"),
                name=user.email,
                display_name=user.display_name,
            ),
            credentials=[_descriptor(c) for c in existing],
            resident_key_requirement=ResidentKeyRequirement.PREFERRED,
            user_verification=self.user_verification,
        )
        return dict(options), state["challenge"]

    async def verify_registration(
        self,
        user: User,
        client_response: Mapping[str, Any],
        challenge: str,
        nickname: str | None = None,
    ) -> WebAuthnCredential:
        """
        Verify an attestation against the expected challenge and store the key.

        Raises:
            WebAuthnRegistrationError: verification failed (categorized)
            DuplicateNicknameError: the user already uses this nickname
        """
        if not challenge or not client_response:
            raise WebAuthnRegistrationError(WebAuthnErrorCategory.TIMED_OUT)

        try:
            auth_data = self.server.register_complete(self._state(challenge), client_response)
        except CEREMONY_ERRORS as e:
            logger.warning(
                f"Security key registration rejected for user {user.id}: {type(e).__name__}",
                extra={"user_id": user.id, "reason": "registration_verification"},
            )
            raise WebAuthnRegistrationError.from_error(e) from e

        credential_data = auth_data.credential_data
        if credential_data is None:
            raise WebAuthnRegistrationError(WebAuthnErrorCategory.VERIFICATION_FAILED)

        external_id = websafe_encode(credential_data.credential_id)
        existing = await self.db.execute(
            select(WebAuthnCredential.id).where(WebAuthnCredential.external_id == external_id)
        )
        if existing.scalar_one_or_none() is not None:
            raise WebAuthnRegistrationError(WebAuthnErrorCategory.ALREADY_REGISTERED)

        nickname = nickname.strip() if nickname and nickname.strip() else await self._default_nickname(user)
        await self._ensure_nickname_free(user, nickname)

        credential = WebAuthnCredential(
            user_id=user.id,
            external_id=external_id,
            public_key=cbor.encode(dict(credential_data.public_key)),
            sign_count=auth_data.counter,
            nickname=nickname,
            active=True,
        )
        self.db.add(credential)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise WebAuthnRegistrationError(WebAuthnErrorCategory.ALREADY_REGISTERED) from e
        await self.db.refresh(credential)

        logger.info(
            f"Security key registered for user {user.id}",
            extra={"user_id": user.id, "credential_id": credential.id},
        )
        return credential

    # ============== Authentication ==============

    async def authentication_options(self, user: User) -> tuple[dict[str, Any], str]:
        """Options for navigator.credentials.get(), restricted to active keys."""
        active = await self._credentials(user, active_only=True)
        options, state = self.server.authenticate_begin(
            credentials=[_descriptor(c) for c in active],
            user_verification=self.user_verification,
        )
        return dict(options), state["challenge"]

    async def verify_authentication(self, user: User, client_response: Mapping[str, Any], challenge: str) -> bool:
        """
        Verify an assertion from one of the user's active keys.

        The stored signature counter must strictly increase. The new counter
        is written with a compare-and-swap on the old one, so a replayed or
        concurrently submitted assertion cannot both pass.
        """
        if not challenge or not client_response:
            return False

        try:
            response = AuthenticationResponse.from_dict(client_response)
        except CEREMONY_ERRORS as e:
            logger.warning(f"Unreadable assertion for user {user.id}: {type(e).__name__}")
            return False

        result = await self.db.execute(
            select(WebAuthnCredential).where(
                WebAuthnCredential.user_id == user.id,
                WebAuthnCredential.external_id == websafe_encode(response.raw_id),
                WebAuthnCredential.active.is_(True),
            )
        )
        credential = result.scalar_one_or_none()
        if credential is None:
            logger.warning(
                f"Assertion for unknown or inactive key from user {user.id}",
                extra={"user_id": user.id, "reason": "unknown_credential"},
            )
            return False

        try:
            self.server.authenticate_complete(self._state(challenge), [_attested_data(credential)], response)
        except CEREMONY_ERRORS as e:
            logger.warning(
                f"Assertion rejected for user {user.id}: {type(e).__name__}",
                extra={"user_id": user.id, "credential_id": credential.id, "reason": "assertion_verification"},
            )
            return False

        user_id, credential_id = user.id, credential.id
        old_count = credential.sign_count
        new_count = response.response.authenticator_data.counter
        if new_count <= old_count:
            logger.warning(
                f"Signature counter did not increase for credential {credential_id} ({new_count} <= {old_count})",
                extra={"user_id": user_id, "credential_id": credential_id, "reason": "counter_regression"},
            )
            return False

        try:
            updated = await self.db.execute(
                update(WebAuthnCredential)
                .where(
                    WebAuthnCredential.id == credential_id,
                    WebAuthnCredential.sign_count == old_count,
                    WebAuthnCredential.active.is_(True),
                )
                .values(sign_count=new_count, last_used_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                await self.db.rollback()
                await self.db.refresh(user)
                await self.db.refresh(credential)
                logger.warning(
                    f"Credential {credential_id} was used concurrently",
                    extra={"user_id": user_id, "credential_id": credential_id, "reason": "stale_counter"},
                )
                return False
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Could not persist counter for credential {credential_id}: {type(e).__name__}")
            return False

        await self.db.refresh(credential)
        logger.info(
            f"Security key verified for user {user_id}",
            extra={"user_id": user_id, "credential_id": credential_id},
        )
        return True

    # ============== Management ==============

    async def rename_credential(self, user: User, credential_id: int, nickname: str) -> WebAuthnCredential:
        credential = await self.get_credential(user, credential_id)
        nickname = nickname.strip()
        if nickname != credential.nickname:
            await self._ensure_nickname_free(user, nickname)
            credential.nickname = nickname
            await self.db.commit()
            await self.db.refresh(credential)
        return credential

    async def deactivate_credential(self, user: User, credential_id: int) -> WebAuthnCredential:
        """Keep the row but stop offering and accepting the key."""
        credential = await self.get_credential(user, credential_id)
        credential.deactivate()
        await self.db.commit()
        await self.db.refresh(credential)

        logger.info(
            f"Security key {credential.id} deactivated for user {user.id}",
            extra={"user_id": user.id, "credential_id": credential.id},
        )
        return credential

    async def remove_credential(self, user: User, credential_id: int) -> bool:
        """Delete one of the user's keys. False if it is not theirs or missing."""
        try:
            credential = await self.get_credential(user, credential_id)
        except CredentialNotFoundError:
            return False

        await self.db.delete(credential)
        await self.db.commit()

        logger.info(
            f"Security key {credential_id} removed for user {user.id}",
            extra={"user_id": user.id, "credential_id": credential_id},
        )
        return True

    # ============== Private Methods ==============

    def _state(self, challenge: str) -> dict[str, Any]:
        return {"challenge": challenge, "user_verification": self.user_verification.value}

    async def _default_nickname(self, user: User) -> str:
        taken = {c.nickname for c in await self._credentials(user)}
        number = len(taken) + 1
        while DEFAULT_NICKNAME.format(number=number) in taken:
            number += 1
        return DEFAULT_NICKNAME.format(number=number)

    async def _ensure_nickname_free(self, user: User, nickname: str) -> None:
        result = await self.db.execute(
            select(WebAuthnCredential.id).where(
                WebAuthnCredential.user_id == user.id,
                WebAuthnCredential.nickname == nickname,
            )
        )
        if result.scalar_one_or_none() is not None:
            raise DuplicateNicknameError(nickname)
