"""
Tests for the security key (WebAuthn) service.

Uses a software authenticator that signs real ES256 assertions.
"""

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.exceptions import (
    CredentialNotFoundError,
    DuplicateNicknameError,
    WebAuthnErrorCategory,
    WebAuthnRegistrationError,
)
from authgate.models.user import User
from authgate.models.webauthn_credential import WebAuthnCredential
from authgate.services.webauthn_service import WebAuthnService
from utils.soft_authenticator import SoftAuthenticator


@pytest.fixture
def webauthn_service(test_db: AsyncSession) -> WebAuthnService:
    return WebAuthnService(test_db)


@pytest.fixture
def authenticator() -> SoftAuthenticator:
    return SoftAuthenticator()


async def register(
    service: WebAuthnService, user: User, authenticator: SoftAuthenticator, nickname: str | None = None
) -> WebAuthnCredential:
    _, challenge = await service.registration_options(user)
    return await service.verify_registration(user, authenticator.register(challenge), challenge, nickname)


async def authenticate(service: WebAuthnService, user: User, authenticator: SoftAuthenticator, **kwargs) -> bool:
    _, challenge = await service.authentication_options(user)
    return await service.verify_authentication(user, authenticator.authenticate(challenge, **kwargs), challenge)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_registration_options(self, webauthn_service: WebAuthnService, test_user: User):
        options, challenge = await webauthn_service.registration_options(test_user)

        assert challenge
        public_key = options["publicKey"]
        assert public_key["challenge"] == challenge
        assert public_key["rp"]["id"] == "localhost"
        assert public_key["user"]["name"] == test_user.email

    @pytest.mark.asyncio
    async def test_each_options_call_has_a_new_challenge(self, webauthn_service: WebAuthnService, test_user: User):
        _, first = await webauthn_service.registration_options(test_user)
        _, second = await webauthn_service.registration_options(test_user)
        assert first != second

    @pytest.mark.asyncio
    async def test_registered_keys_are_excluded(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator
    ):
        await register(webauthn_service, test_user, authenticator)

        options, _ = await webauthn_service.registration_options(test_user)
        excluded = [c["id"] for c in options["publicKey"]["excludeCredentials"]]
        assert excluded == [authenticator.external_id]

    @pytest.mark.asyncio
    async def test_verify_registration_persists_credential(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator
    ):
        credential = await register(webauthn_service, test_user, authenticator, nickname="YubiKey A")

        assert credential.id is not None
        assert credential.user_id == test_user.id
        assert credential.external_id == authenticator.external_id
        assert credential.nickname == "YubiKey A"
        assert credential.sign_count == 0
        assert credential.active is True
        assert isinstance(credential.public_key, bytes)

    @pytest.mark.asyncio
    async def test_default_nicknames(self, webauthn_service: WebAuthnService, test_user: User):
        first = await register(webauthn_service, test_user, SoftAuthenticator())
        second = await register(webauthn_service, test_user, SoftAuthenticator(), nickname="   ")

        assert first.nickname == "Security key 1"
        assert second.nickname == "Security key 2"

    @pytest.mark.asyncio
    async def test_duplicate_nickname_rejected(self, webauthn_service: WebAuthnService, test_user: User):
        await register(webauthn_service, test_user, SoftAuthenticator(), nickname="Laptop")

        with pytest.raises(DuplicateNicknameError):
            await register(webauthn_service, test_user, SoftAuthenticator(), nickname="Laptop")

    @pytest.mark.asyncio
    async def test_same_nickname_for_different_users(
        self, webauthn_service: WebAuthnService, test_user: User, other_user: User
    ):
        await register(webauthn_service, test_user, SoftAuthenticator(), nickname="Laptop")
        credential = await register(webauthn_service, other_user, SoftAuthenticator(), nickname="Laptop")
        assert credential.nickname == "Laptop"

    @pytest.mark.asyncio
    async def test_forced_reregistration_rejected(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator
    ):
        await register(webauthn_service, test_user, authenticator)

        with pytest.raises(WebAuthnRegistrationError) as exc_info:
            await register(webauthn_service, test_user, authenticator)

        assert exc_info.value.category == WebAuthnErrorCategory.ALREADY_REGISTERED
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_key_cannot_be_shared_between_users(
        self, webauthn_service: WebAuthnService, test_user: User, other_user: User, authenticator: SoftAuthenticator
    ):
        await register(webauthn_service, test_user, authenticator)

        with pytest.raises(WebAuthnRegistrationError) as exc_info:
            await register(webauthn_service, other_user, authenticator)
        assert exc_info.value.category == WebAuthnErrorCategory.ALREADY_REGISTERED

    @pytest.mark.asyncio
    async def test_wrong_challenge_rejected(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, test_db
    ):
        _, challenge = await webauthn_service.registration_options(test_user)
        _, other_challenge = await webauthn_service.registration_options(test_user)

        with pytest.raises(WebAuthnRegistrationError):
            await webauthn_service.verify_registration(test_user, authenticator.register(other_challenge), challenge)

        count = await test_db.scalar(select(func.count(WebAuthnCredential.id)))
        assert count == 0

    @pytest.mark.asyncio
    async def test_wrong_origin_rejected(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator
    ):
        _, challenge = await webauthn_service.registration_options(test_user)
        response = authenticator.register(challenge, origin="https://evil.example")

        with pytest.raises(WebAuthnRegistrationError):
            await webauthn_service.verify_registration(test_user, response, challenge)

    @pytest.mark.asyncio
    async def test_wrong_rp_rejected(self, webauthn_service: WebAuthnService, test_user: User):
        authenticator = SoftAuthenticator(rp_id="evil.example")
        with pytest.raises(WebAuthnRegistrationError):
            await register(webauthn_service, test_user, authenticator)

    @pytest.mark.asyncio
    async def test_missing_challenge_rejected(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator
    ):
        with pytest.raises(WebAuthnRegistrationError):
            await webauthn_service.verify_registration(test_user, authenticator.register("abc"), "")

    @pytest.mark.asyncio
    async def test_malformed_response_rejected(self, webauthn_service: WebAuthnService, test_user: User):
        _, challenge = await webauthn_service.registration_options(test_user)
        with pytest.raises(WebAuthnRegistrationError) as exc_info:
            await webauthn_service.verify_registration(test_user, {"id": "nope"}, challenge)
        assert "nope" not in exc_info.value.message


class TestAuthentication:
    @pytest.fixture
    async def registered(self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator):
        return await register(webauthn_service, test_user, authenticator, nickname="YubiKey A")

    @pytest.mark.asyncio
    async def test_authentication_options_allow_active_keys(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        options, challenge = await webauthn_service.authentication_options(test_user)

        assert options["publicKey"]["challenge"] == challenge
        allowed = [c["id"] for c in options["publicKey"]["allowCredentials"]]
        assert allowed == [authenticator.external_id]

    @pytest.mark.asyncio
    async def test_success_advances_counter(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        assert await authenticate(webauthn_service, test_user, authenticator) is True

        assert registered.sign_count == 1
        assert registered.last_used_at is not None

    @pytest.mark.asyncio
    async def test_replayed_assertion_fails(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        _, challenge = await webauthn_service.authentication_options(test_user)
        response = authenticator.authenticate(challenge)

        assert await webauthn_service.verify_authentication(test_user, response, challenge) is True
        assert await webauthn_service.verify_authentication(test_user, response, challenge) is False
        assert registered.sign_count == 1

    @pytest.mark.asyncio
    async def test_counter_not_advanced_fails(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        assert await authenticate(webauthn_service, test_user, authenticator) is True
        assert await authenticate(webauthn_service, test_user, authenticator, advance=False) is False

    @pytest.mark.asyncio
    async def test_zero_counter_fails(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        assert await authenticate(webauthn_service, test_user, authenticator, advance=False) is False
        assert registered.sign_count == 0

    @pytest.mark.asyncio
    async def test_counter_going_backwards_fails(
        self,
        webauthn_service: WebAuthnService,
        test_user: User,
        authenticator: SoftAuthenticator,
        registered,
        test_db: AsyncSession,
    ):
        await test_db.execute(
            update(WebAuthnCredential).where(WebAuthnCredential.id == registered.id).values(sign_count=10)
        )
        await test_db.commit()
        authenticator.counter = 4

        assert await authenticate(webauthn_service, test_user, authenticator) is False
        await test_db.refresh(registered)
        assert registered.sign_count == 10

    @pytest.mark.asyncio
    async def test_counter_jump_is_accepted(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        authenticator.counter = 99
        assert await authenticate(webauthn_service, test_user, authenticator) is True
        assert registered.sign_count == 100

    @pytest.mark.asyncio
    async def test_concurrent_use_loses(
        self,
        webauthn_service: WebAuthnService,
        test_user: User,
        authenticator: SoftAuthenticator,
        registered,
        test_db: AsyncSession,
    ):
        """Another request advanced the counter after this one read it."""
        await test_db.execute(
            update(WebAuthnCredential)
            .where(WebAuthnCredential.id == registered.id)
            .values(sign_count=5)
            .execution_options(synchronize_session=False)
        )
        await test_db.commit()

        assert await authenticate(webauthn_service, test_user, authenticator) is False
        assert registered.sign_count == 5

    @pytest.mark.asyncio
    async def test_wrong_challenge_fails(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        _, challenge = await webauthn_service.authentication_options(test_user)
        _, other = await webauthn_service.authentication_options(test_user)

        response = authenticator.authenticate(other)
        assert await webauthn_service.verify_authentication(test_user, response, challenge) is False
        assert registered.sign_count == 0

    @pytest.mark.asyncio
    async def test_forged_signature_fails(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        impostor = SoftAuthenticator()
        impostor.credential_id = authenticator.credential_id

        assert await authenticate(webauthn_service, test_user, impostor) is False

    @pytest.mark.asyncio
    async def test_inactive_key_fails(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        await webauthn_service.deactivate_credential(test_user, registered.id)
        assert await authenticate(webauthn_service, test_user, authenticator) is False

    @pytest.mark.asyncio
    async def test_other_users_key_fails(
        self,
        webauthn_service: WebAuthnService,
        other_user: User,
        authenticator: SoftAuthenticator,
        registered,
    ):
        assert await authenticate(webauthn_service, other_user, authenticator) is False

    @pytest.mark.asyncio
    async def test_unknown_key_fails(self, webauthn_service: WebAuthnService, test_user: User, registered):
        assert await authenticate(webauthn_service, test_user, SoftAuthenticator()) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [None, {}, {"id": "x", "type": "public-key"}])
    async def test_malformed_response_fails(
        self, webauthn_service: WebAuthnService, test_user: User, registered, response
    ):
        _, challenge = await webauthn_service.authentication_options(test_user)
        assert await webauthn_service.verify_authentication(test_user, response, challenge) is False

    @pytest.mark.asyncio
    async def test_blank_challenge_fails(
        self, webauthn_service: WebAuthnService, test_user: User, authenticator: SoftAuthenticator, registered
    ):
        response = authenticator.authenticate("abc")
        assert await webauthn_service.verify_authentication(test_user, response, "") is False


class TestManagement:
    @pytest.mark.asyncio
    async def test_list_and_has_active(self, webauthn_service: WebAuthnService, test_user: User):
        assert await webauthn_service.has_active_credentials(test_user) is False

        first = await register(webauthn_service, test_user, SoftAuthenticator(), nickname="One")
        await register(webauthn_service, test_user, SoftAuthenticator(), nickname="Two")

        credentials = await webauthn_service.list_credentials(test_user)
        assert [c.nickname for c in credentials] == ["One", "Two"]
        assert await webauthn_service.has_active_credentials(test_user) is True

        await webauthn_service.deactivate_credential(test_user, first.id)
        assert len(await webauthn_service.list_credentials(test_user)) == 2

    @pytest.mark.asyncio
    async def test_deactivated_keys_leave_exclude_list(self, webauthn_service: WebAuthnService, test_user: User):
        credential = await register(webauthn_service, test_user, SoftAuthenticator())
        await webauthn_service.deactivate_credential(test_user, credential.id)

        assert await webauthn_service.has_active_credentials(test_user) is False
        options, _ = await webauthn_service.registration_options(test_user)
        assert not options["publicKey"].get("excludeCredentials")

    @pytest.mark.asyncio
    async def test_rename(self, webauthn_service: WebAuthnService, test_user: User):
        credential = await register(webauthn_service, test_user, SoftAuthenticator(), nickname="Old")
        renamed = await webauthn_service.rename_credential(test_user, credential.id, "  New  ")
        assert renamed.nickname == "New"

    @pytest.mark.asyncio
    async def test_rename_to_taken_nickname(self, webauthn_service: WebAuthnService, test_user: User):
        await register(webauthn_service, test_user, SoftAuthenticator(), nickname="One")
        second = await register(webauthn_service, test_user, SoftAuthenticator(), nickname="Two")

        with pytest.raises(DuplicateNicknameError):
            await webauthn_service.rename_credential(test_user, second.id, "One")

    @pytest.mark.asyncio
    async def test_cannot_touch_other_users_key(
        self, webauthn_service: WebAuthnService, test_user: User, other_user: User
    ):
        credential = await register(webauthn_service, test_user, SoftAuthenticator())

        with pytest.raises(CredentialNotFoundError):
            await webauthn_service.rename_credential(other_user, credential.id, "Mine now")
        with pytest.raises(CredentialNotFoundError):
            await webauthn_service.deactivate_credential(other_user, credential.id)

    @pytest.mark.asyncio
    async def test_remove_is_scoped_to_owner(
        self, webauthn_service: WebAuthnService, test_user: User, other_user: User, test_db: AsyncSession
    ):
        credential = await register(webauthn_service, test_user, SoftAuthenticator())

        assert await webauthn_service.remove_credential(other_user, credential.id) is False
        assert await test_db.get(WebAuthnCredential, credential.id) is not None

        assert await webauthn_service.remove_credential(test_user, credential.id) is True
        assert await webauthn_service.remove_credential(test_user, credential.id) is False
        assert await webauthn_service.list_credentials(test_user) == []

    @pytest.mark.asyncio
    async def test_remove_unknown(self, webauthn_service: WebAuthnService, test_user: User):
        assert await webauthn_service.remove_credential(test_user, 12345) is False
