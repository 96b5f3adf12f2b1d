"""create users and push tokens

Revision ID: c41f7e2a9b10
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "c41f7e2a9b10"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    # user_id is an opaque string, so no foreign key to users
    op.create_table(
        "push_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        sa.Column(
            "device_type",
            sa.Enum("ios", "android", "web", name="deviceclass"),
            nullable=False,
        ),
        sa.Column("brand", sa.String(100), nullable=True),
        sa.Column("model_name", sa.String(100), nullable=True),
        sa.Column("os_version", sa.String(50), nullable=True),
        sa.Column("app_version", sa.String(50), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("last_notification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("allow_notifications", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_sound", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_vibration", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("notification_count >= 0", name="ck_push_tokens_count_nonnegative"),
    )
    op.create_index("ix_push_tokens_user_active", "push_tokens", ["user_id", "is_active"])
    op.create_index("ix_push_tokens_device_active", "push_tokens", ["device_type", "is_active"])


def downgrade() -> None:
    op.drop_index("ix_push_tokens_device_active", table_name="push_tokens")
    op.drop_index("ix_push_tokens_user_active", table_name="push_tokens")
    op.drop_table("push_tokens")
    op.drop_table("users")
    sa.Enum(name="deviceclass").drop(op.get_bind(), checkfirst=True)
