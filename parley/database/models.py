"""
parley.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- users                   — Minimal mirror of identity-provider users
- chat_rooms              — Rooms that members join
- chat_room_users         — Per-user-per-room presence & moderation state
- chat_moderation_actions — Append-only moderation audit trail
- chat_messages           — Posted messages

Foreign keys are plain integer columns.  There are deliberately no ORM
relationships: services read rows, convert them to
:class:`parley.engine.membership.MembershipRecord`, and never lazy-load.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Parley ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ModerationActionType(enum.StrEnum):
    """Categories of moderation mutations recorded in chat_moderation_actions."""
    MUTE_USER = "mute_user"
    UNMUTE_USER = "unmute_user"
    BAN_USER = "ban_user"
    UNBAN_USER = "unban_user"
    EXPIRE_MUTE = "expire_mute"
    EXPIRE_BAN = "expire_ban"
    DELETE_MESSAGE = "delete_message"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Chat rooms
# ---------------------------------------------------------------------------
class ChatRoom(Base):
    __tablename__ = "chat_rooms"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    created_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<ChatRoom id={self.id} name={self.name!r} active={self.is_active}>"


# ---------------------------------------------------------------------------
# Membership — one row per user per room
# ---------------------------------------------------------------------------
class ChatRoomUser(Base):
    __tablename__ = "chat_room_users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    room_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Presence
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_online: Mapped[bool] = mapped_column(Boolean, default=True)

    # Moderation
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False)
    muted_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    muted_by: Mapped[int | None] = mapped_column(BigInteger, default=None)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False)
    banned_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    banned_by: Mapped[int | None] = mapped_column(BigInteger, default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_chat_room_users_room_user"),
        Index("ix_chat_room_users_room_online", "room_id", "is_online"),
        Index("ix_chat_room_users_user_online", "user_id", "is_online"),
        Index("ix_chat_room_users_last_seen", "last_seen_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChatRoomUser room={self.room_id} user={self.user_id} "
            f"online={self.is_online} muted={self.is_muted} banned={self.is_banned}>"
        )


# ---------------------------------------------------------------------------
# Moderation audit trail — append-only
# ---------------------------------------------------------------------------
class ModerationAction(Base):
    __tablename__ = "chat_moderation_actions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    room_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    moderator_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)  # None = system
    target_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_chat_moderation_actions_room_time", "room_id", "created_at"),
        Index("ix_chat_moderation_actions_target_time", "target_user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ModerationAction id={self.id} room={self.room_id} "
            f"action={self.action_type} target={self.target_user_id}>"
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    room_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_chat_messages_room_time", "room_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ChatMessage id={self.id} room={self.room_id} user={self.user_id}>"
