"""Create chat rooms, memberships, moderation audit and messages

Revision ID: 5c2e9d1f0a7b
Revises:
Create Date: 2026-10-19 09:12:31.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e9d1f0a7b'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create users, chat_rooms, chat_room_users, chat_moderation_actions, chat_messages."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("is_admin", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- chat_rooms ---
    op.create_table(
        "chat_rooms",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("created_by", sa.BigInteger, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- chat_room_users (membership: presence + moderation) ---
    op.create_table(
        "chat_room_users",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("room_id", sa.BigInteger, nullable=False),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_muted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("muted_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("muted_by", sa.BigInteger, nullable=True),
        sa.Column("is_banned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("banned_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("banned_by", sa.BigInteger, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("room_id", "user_id", name="uq_chat_room_users_room_user"),
    )
    op.create_index(
        "ix_chat_room_users_room_online", "chat_room_users", ["room_id", "is_online"],
    )
    op.create_index(
        "ix_chat_room_users_user_online", "chat_room_users", ["user_id", "is_online"],
    )
    op.create_index("ix_chat_room_users_last_seen", "chat_room_users", ["last_seen_at"])

    # --- chat_moderation_actions (append-only audit) ---
    op.create_table(
        "chat_moderation_actions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("room_id", sa.BigInteger, nullable=False),
        sa.Column("moderator_id", sa.BigInteger, nullable=True),
        sa.Column("target_user_id", sa.BigInteger, nullable=False),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_chat_moderation_actions_room_time", "chat_moderation_actions",
        ["room_id", "created_at"],
    )
    op.create_index(
        "ix_chat_moderation_actions_target_time", "chat_moderation_actions",
        ["target_user_id", "created_at"],
    )

    # --- chat_messages ---
    op.create_table(
        "chat_messages",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("room_id", sa.BigInteger, nullable=False),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_chat_messages_room_time", "chat_messages", ["room_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_chat_messages_room_time", table_name="chat_messages")
    op.drop_table("chat_messages")

    op.drop_index("ix_chat_moderation_actions_target_time", table_name="chat_moderation_actions")
    op.drop_index("ix_chat_moderation_actions_room_time", table_name="chat_moderation_actions")
    op.drop_table("chat_moderation_actions")

    op.drop_index("ix_chat_room_users_last_seen", table_name="chat_room_users")
    op.drop_index("ix_chat_room_users_user_online", table_name="chat_room_users")
    op.drop_index("ix_chat_room_users_room_online", table_name="chat_room_users")
    op.drop_table("chat_room_users")

    op.drop_table("chat_rooms")
    op.drop_table("users")
