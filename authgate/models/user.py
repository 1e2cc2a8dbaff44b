"""
User Model

The account record the second-factor subsystem hangs off. First-factor
fields (passwords, confirmation, lockout) belong to the surrounding
application and are not modelled here.
"""

import secrets
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from authgate.database import Base


def generate_webauthn_id() -> str:
    """Random, stable user handle for WebAuthn ceremonies."""
    return secrets.token_urlsafe(32)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)

    # Opaque handle sent to authenticators instead of the primary key
    webauthn_id = Column(String(64), unique=True, nullable=False, default=generate_webauthn_id)

    # Federated login (e.g. "google_oauth2" + subject id)
    provider = Column(String(50), nullable=True)
    uid = Column(String(255), nullable=True)

    # Authenticator app (values are sealed by the secret vault)
    otp_secret_key = Column(Text, nullable=True)
    otp_backup_codes = Column(Text, nullable=True)
    otp_backup_codes_generated_at = Column(DateTime, nullable=True)
    otp_required_for_login = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    webauthn_credentials = relationship(
        "WebAuthnCredential",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]

    @property
    def from_federated_login(self) -> bool:
        return bool(self.provider and self.uid)

    @property
    def totp_enabled(self) -> bool:
        return bool(self.otp_required_for_login and self.otp_secret_key)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
