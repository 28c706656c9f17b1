"""
parley.engine.membership — Immutable membership record
=======================================================

**Why this file exists:**
Presence and moderation rules are pure functions over a snapshot of one
``chat_room_users`` row.  Keeping that snapshot a frozen dataclass means the
rules never touch the database, and services decide exactly when a new
state is written back.

A record is derived from an ORM row with :meth:`MembershipRecord.from_row`
and written back with :meth:`MembershipRecord.apply_to` while the row is
still locked.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from parley.database.models import ChatRoomUser

# Fields copied between record and row (identity columns excluded).
_MUTABLE_FIELDS = (
    "last_seen_at",
    "is_online",
    "is_muted",
    "muted_until",
    "muted_by",
    "is_banned",
    "banned_until",
    "banned_by",
)


def _aware(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class MembershipRecord:
    """Snapshot of one user's presence and moderation state in one room."""

    room_id: int
    user_id: int
    joined_at: datetime
    last_seen_at: datetime
    is_online: bool = True
    is_muted: bool = False
    muted_until: datetime | None = None
    muted_by: int | None = None
    is_banned: bool = False
    banned_until: datetime | None = None
    banned_by: int | None = None

    @classmethod
    def new(cls, room_id: int, user_id: int, now: datetime) -> MembershipRecord:
        """A freshly joined member: online, unmuted, unbanned."""
        return cls(room_id=room_id, user_id=user_id, joined_at=now, last_seen_at=now)

    @classmethod
    def from_row(cls, row: ChatRoomUser) -> MembershipRecord:
        return cls(
            room_id=row.room_id,
            user_id=row.user_id,
            joined_at=_aware(row.joined_at),
            last_seen_at=_aware(row.last_seen_at),
            is_online=bool(row.is_online),
            is_muted=bool(row.is_muted),
            muted_until=_aware(row.muted_until),
            muted_by=row.muted_by,
            is_banned=bool(row.is_banned),
            banned_until=_aware(row.banned_until),
            banned_by=row.banned_by,
        )

    def apply_to(self, row: ChatRoomUser) -> None:
        """Copy mutable state onto *row*.  ``joined_at`` is never rewritten."""
        for name in _MUTABLE_FIELDS:
            setattr(row, name, getattr(self, name))

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data
