"""Create users and webauthn_credentials tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 12:00:00.000000

This migration adds:
- users table with sealed authenticator app seed and backup codes
- webauthn_credentials table for registered security keys
"""

from collections.abc import Sequence
from typing import Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("webauthn_id", sa.String(length=64), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=True),
        sa.Column("uid", sa.String(length=255), nullable=True),
        sa.Column("otp_secret_key", sa.Text(), nullable=True),
        sa.Column("otp_backup_codes", sa.Text(), nullable=True),
        sa.Column("otp_backup_codes_generated_at", sa.DateTime(), nullable=True),
        sa.Column("otp_required_for_login", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("webauthn_id"),
    )
    op.create_index("ix_users_id", "users", ["id"], unique=False)

    op.create_table(
        "webauthn_credentials",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(length=1024), nullable=False),
        sa.Column("public_key", sa.LargeBinary(), nullable=False),
        sa.Column("sign_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("nickname", sa.String(length=100), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "nickname", name="uq_webauthn_credentials_user_nickname"),
        sa.CheckConstraint("sign_count >= 0", name="ck_webauthn_credentials_sign_count_non_negative"),
    )
    op.create_index("ix_webauthn_credentials_id", "webauthn_credentials", ["id"], unique=False)
    op.create_index("ix_webauthn_credentials_user_id", "webauthn_credentials", ["user_id"], unique=False)
    op.create_index("ix_webauthn_credentials_external_id", "webauthn_credentials", ["external_id"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_webauthn_credentials_external_id", table_name="webauthn_credentials")
    op.drop_index("ix_webauthn_credentials_user_id", table_name="webauthn_credentials")
    op.drop_index("ix_webauthn_credentials_id", table_name="webauthn_credentials")
    op.drop_table("webauthn_credentials")

    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
