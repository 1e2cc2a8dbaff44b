"""
WebAuthn Credential Model

One row per security key or platform authenticator a user has registered.
"""

from datetime import datetime, timedelta

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from authgate.database import Base

RECENT_USE_WINDOW = timedelta(days=30)


class WebAuthnCredential(Base):
    """
    A registered authenticator.

    Stores:
    - Credential ID (globally unique, websafe base64)
    - COSE public key (CBOR bytes)
    - Signature counter last accepted from the authenticator
    """

    __tablename__ = "webauthn_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "nickname", name="uq_webauthn_credentials_user_nickname"),
        CheckConstraint("sign_count >= 0", name="ck_webauthn_credentials_sign_count_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    external_id = Column(String(1024), unique=True, nullable=False, index=True)
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(BigInteger, default=0, nullable=False)

    nickname = Column(String(100), nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="webauthn_credentials")

    def deactivate(self) -> None:
        self.active = False

    @property
    def security_level(self) -> str:
        """Rough health of the key: counter support plus recent use."""
        if self.sign_count > 0 and self.last_used_at and self.last_used_at > datetime.utcnow() - RECENT_USE_WINDOW:
            return "high"
        if self.sign_count > 0:
            return "medium"
        return "low"

    def __repr__(self) -> str:
        return f"<WebAuthnCredential(id={self.id}, user_id={self.user_id}, nickname={self.nickname})>"
