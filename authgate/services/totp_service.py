"""
Authenticator App (TOTP) Service

Provides TOTP-based second factor using the pyotp library, with seeds and
backup codes sealed at rest by the secret vault.
Includes single-use backup code generation and consumption.
"""

import logging
import secrets
import string
import time
from datetime import datetime, timedelta
from io import BytesIO

import pyotp
import qrcode
import qrcode.image.svg
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.exceptions import InvalidSecretTokenError, NoTotpSecretError, TotpNotEnabledError
from authgate.models.user import User
from authgate.utils.secret_vault import SecretPurpose, SecretVault, get_secret_vault

logger = logging.getLogger(__name__)

# Number of backup codes to generate
BACKUP_CODE_COUNT = 8

# Backup code length (characters)
BACKUP_CODE_LENGTH = 8

BACKUP_CODE_ALPHABET = string.ascii_lowercase + string.digits

# Standard RFC 6238 step
TOTP_INTERVAL = 30

# Seed size in bytes before Base32 encoding (160 bits)
SECRET_BYTES = 20


def normalize_backup_code(code: str) -> str:
    """Strip whitespace and dashes, lowercase."""
    return "".join(ch for ch in code if not ch.isspace() and ch != "-").lower()


def is_well_formed_backup_code(candidate: str) -> bool:
    return len(candidate) == BACKUP_CODE_LENGTH and all(ch in BACKUP_CODE_ALPHABET for ch in candidate)


class TotpService:
    """Service for authenticator-app codes and backup codes."""

    def __init__(self, db: AsyncSession, vault: SecretVault | None = None, issuer: str | None = None):
        self.db = db
        self.vault = vault or get_secret_vault()
        self.issuer = issuer or settings.totp_issuer

    # ============== Seed ==============

    async def generate_secret(self, user: User) -> str:
        """
        Create a new random seed for the user.

        The sealed seed is persisted; the plaintext is returned once for the
        setup screen and cannot be fetched again through this service's API.
        """
        secret = pyotp.random_base32(length=SECRET_BYTES * 8 // 5)
        user.otp_secret_key = self.vault.seal(secret, SecretPurpose.TOTP_SEED)
        await self.db.commit()

        logger.info(f"TOTP secret provisioned for user {user.id}", extra={"user_id": user.id})
        return secret

    async def get_secret(self, user: User) -> str:
        """Return the user's seed, provisioning one if none exists."""
        if user.otp_secret_key:
            return self._open_secret(user)
        return await self.generate_secret(user)

    def provisioning_uri(self, user: User, issuer_name: str | None = None) -> str:
        """
        Build the otpauth://totp/ URI for QR rendering.

        Raises:
            NoTotpSecretError: the user has no seed provisioned
        """
        if not user.otp_secret_key:
            raise NoTotpSecretError()

        secret = self._open_secret(user)
        return pyotp.TOTP(secret, interval=TOTP_INTERVAL).provisioning_uri(
            name=user.email,
            issuer_name=issuer_name or self.issuer,
        )

    def generate_qr_code(self, user: User, issuer_name: str | None = None) -> str | None:
        """Render the provisioning URI as an SVG QR code. None if unavailable."""
        try:
            provisioning_uri = self.provisioning_uri(user, issuer_name)
        except (NoTotpSecretError, InvalidSecretTokenError):
            return None

        img = qrcode.make(provisioning_uri, image_factory=qrcode.image.svg.SvgPathImage, box_size=10, border=4)
        buffer = BytesIO()
        img.save(buffer)
        return buffer.getvalue().decode("utf-8")

    # ============== Verification ==============

    def verify_code(
        self,
        user: User,
        code: str | None,
        drift_seconds: int | None = None,
        for_time: float | None = None,
    ) -> bool:
        """
        Check a 6-digit code against every step in [now - drift, now + drift].

        Blank input fails without touching the seed. Any decryption or
        decoding problem counts as a failed verification.
        """
        if not code or not code.strip():
            return False
        if not user.otp_secret_key:
            return False

        code = code.strip()
        # compare_digest only accepts ASCII str
        if not (code.isascii() and code.isdigit()):
            return False

        drift = settings.totp_drift_seconds if drift_seconds is None else drift_seconds
        now = time.time() if for_time is None else for_time

        try:
            totp = pyotp.TOTP(self._open_secret(user), interval=TOTP_INTERVAL)
            first_step = int((now - drift) // TOTP_INTERVAL)
            last_step = int((now + drift) // TOTP_INTERVAL)
            for step in range(first_step, last_step + 1):
                if secrets.compare_digest(totp.generate_otp(step), code):
                    return True
        except (InvalidSecretTokenError, ValueError, TypeError) as e:
            logger.error(
                f"TOTP verification failed for user {user.id}: {type(e).__name__}",
                extra={"user_id": user.id},
            )
            return False

        return False

    # ============== Backup Codes ==============

    async def generate_backup_codes(self, user: User) -> list[str]:
        """
        Replace the user's backup codes with a fresh batch.

        Returns the plaintext codes; only the sealed batch is stored.
        """
        codes = self._issue_backup_codes(user)
        await self.db.commit()

        logger.info(f"Generated {len(codes)} backup codes for user {user.id}", extra={"user_id": user.id})
        return codes

    async def regenerate_backup_codes(self, user: User) -> list[str]:
        """Issue a new batch; only allowed while authenticator-app 2FA is on."""
        if not user.totp_enabled:
            raise TotpNotEnabledError()
        return await self.generate_backup_codes(user)

    async def verify_and_consume_backup_code(self, user: User, code: str | None) -> bool:
        """
        Verify a backup code and remove it from the batch.

        The reduced batch is written with a compare-and-swap on the sealed
        value that was read, so two requests racing with the same code
        cannot both succeed.
        """
        if not code or not code.strip():
            return False

        user_id = user.id
        sealed = user.otp_backup_codes
        if not sealed:
            return False

        candidate = normalize_backup_code(code)
        if not is_well_formed_backup_code(candidate):
            return False

        try:
            codes = self.vault.open_json(sealed, SecretPurpose.BACKUP_CODES)
        except InvalidSecretTokenError:
            return False

        match = next((c for c in codes if secrets.compare_digest(c, candidate)), None)
        if match is None:
            return False

        codes.remove(match)
        new_sealed = self.vault.seal_json(codes, SecretPurpose.BACKUP_CODES) if codes else None

        try:
            result = await self.db.execute(
                update(User)
                .where(User.id == user_id, User.otp_backup_codes == sealed)
                .values(otp_backup_codes=new_sealed)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                await self.db.refresh(user)
                logger.warning(
                    f"Backup code for user {user_id} was consumed concurrently",
                    extra={"user_id": user_id, "reason": "stale_backup_codes"},
                )
                return False
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Could not persist backup code use for user {user_id}: {type(e).__name__}")
            return False

        await self.db.refresh(user)
        logger.info(
            f"Backup code used for user {user_id}, {len(codes)} remaining",
            extra={"user_id": user_id},
        )
        return True

    def remaining_backup_codes(self, user: User) -> int:
        if not user.otp_backup_codes:
            return 0
        try:
            return len(self.vault.open_json(user.otp_backup_codes, SecretPurpose.BACKUP_CODES))
        except InvalidSecretTokenError:
            return 0

    def backup_codes_stale(self, user: User, max_age_days: int | None = None) -> bool:
        """True when codes were never generated or are older than the limit."""
        if not user.otp_backup_codes_generated_at:
            return True
        max_age = timedelta(days=max_age_days or settings.backup_codes_stale_after_days)
        return datetime.utcnow() - user.otp_backup_codes_generated_at > max_age

    # ============== Enable / Disable ==============

    async def enable_and_issue_codes(self, user: User, verification_code: str | None) -> list[str] | None:
        """
        Turn on authenticator-app 2FA after a successful code check.

        Returns:
            None if the code is wrong (nothing changed), otherwise the
            backup codes generated by this call ([] if a batch already existed).
        """
        user_id = user.id
        if not self.verify_code(user, verification_code):
            return None

        codes: list[str] = []
        if not user.otp_backup_codes:
            codes = self._issue_backup_codes(user)
        user.otp_required_for_login = True

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"2FA enablement failed for user {user_id}: {type(e).__name__}")
            return None

        logger.info(f"Authenticator app 2FA enabled for user {user.id}", extra={"user_id": user.id})
        return codes

    async def enable(self, user: User, verification_code: str | None) -> bool:
        return await self.enable_and_issue_codes(user, verification_code) is not None

    async def disable(self, user: User) -> bool:
        """Clear seed, backup codes, their timestamp and the required flag together."""
        user_id = user.id
        user.otp_required_for_login = False
        user.otp_secret_key = None
        user.otp_backup_codes = None
        user.otp_backup_codes_generated_at = None

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"2FA disabling failed for user {user_id}: {type(e).__name__}")
            return False

        logger.info(f"Authenticator app 2FA disabled for user {user.id}", extra={"user_id": user.id})
        return True

    # ============== Private Methods ==============

    def _open_secret(self, user: User) -> str:
        return self.vault.open(user.otp_secret_key, SecretPurpose.TOTP_SEED)

    def _issue_backup_codes(self, user: User) -> list[str]:
        """Set a sealed fresh batch on the user without committing."""
        codes = [
            "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(BACKUP_CODE_COUNT)
        ]
        user.otp_backup_codes = self.vault.seal_json(codes, SecretPurpose.BACKUP_CODES)
        user.otp_backup_codes_generated_at = datetime.utcnow()
        return codes
