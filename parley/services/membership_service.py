"""
parley.services.membership_service — Membership repository, join & leave
=========================================================================

Every mutator follows the same shape:

  1. Open a session
  2. ``SELECT … FOR UPDATE`` the membership row
  3. Convert to :class:`MembershipRecord`, apply a pure transition
  4. Write the record back, commit
  5. Publish the resulting event (after commit, so subscribers never see
     state that could still roll back)

SQLite ignores ``FOR UPDATE``; the tests run single-threaded so that is
harmless there.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parley.database.models import ChatRoom, ChatRoomUser, User
from parley.engine import events, presence
from parley.engine.broadcast import BroadcastGateway
from parley.engine.membership import MembershipRecord, utcnow
from parley.engine.moderation import is_effectively_banned
from parley.errors import Forbidden, NotFound

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared row helpers (used by the other services too)
# ---------------------------------------------------------------------------
def lock_membership(
    session: Session, room_id: int, user_id: int
) -> ChatRoomUser | None:
    """Return the membership row for (room, user) with a row lock held."""
    return session.scalars(
        select(ChatRoomUser)
        .where(ChatRoomUser.room_id == room_id, ChatRoomUser.user_id == user_id)
        .with_for_update()
    ).first()


def require_membership(session: Session, room_id: int, user_id: int) -> ChatRoomUser:
    row = lock_membership(session, room_id, user_id)
    if row is None:
        raise NotFound(f"User {user_id} is not a member of chat room {room_id}")
    return row


def require_active_room(session: Session, room_id: int) -> ChatRoom:
    room = session.get(ChatRoom, room_id)
    if room is None or not room.is_active:
        raise NotFound(f"Chat room {room_id} not found")
    return room


def user_name(session: Session, user_id: int) -> str:
    name = session.scalar(select(User.name).where(User.id == user_id))
    return name if name is not None else f"user-{user_id}"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_membership(engine: Engine, room_id: int, user_id: int) -> MembershipRecord | None:
    with Session(engine) as session:
        row = session.scalars(
            select(ChatRoomUser).where(
                ChatRoomUser.room_id == room_id, ChatRoomUser.user_id == user_id,
            )
        ).first()
        return MembershipRecord.from_row(row) if row is not None else None


def list_room_members(
    engine: Engine, room_id: int, *, online_only: bool = False
) -> list[dict]:
    """Members of *room_id* with their display names, most recently seen first."""
    stmt = (
        select(ChatRoomUser, User.name)
        .outerjoin(User, User.id == ChatRoomUser.user_id)
        .where(ChatRoomUser.room_id == room_id)
        .order_by(ChatRoomUser.last_seen_at.desc())
    )
    if online_only:
        stmt = stmt.where(ChatRoomUser.is_online.is_(True))

    with Session(engine) as session:
        rows = session.execute(stmt).all()
        members = []
        for row, name in rows:
            record = MembershipRecord.from_row(row)
            members.append({
                **record.to_dict(),
                "user_name": name if name is not None else f"user-{record.user_id}",
            })
        return members


def online_count(engine: Engine, room_id: int) -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.count())
            .select_from(ChatRoomUser)
            .where(ChatRoomUser.room_id == room_id, ChatRoomUser.is_online.is_(True))
        ) or 0


# ---------------------------------------------------------------------------
# Join / leave
# ---------------------------------------------------------------------------
def join_room(
    engine: Engine,
    room_id: int,
    user_id: int,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Create the membership (online) or bring an existing one online.

    Raises
    ------
    NotFound
        The room does not exist or is inactive.
    Forbidden
        The user is currently banned from the room.
    """
    now = now or utcnow()
    try:
        record, was_online, name = _join(engine, room_id, user_id, now)
    except IntegrityError:
        # Lost the insert race on (room_id, user_id); the row exists now.
        logger.debug("Concurrent join for room %d user %d — retrying", room_id, user_id)
        record, was_online, name = _join(engine, room_id, user_id, now)

    if not was_online:
        logger.info("User %d joined room %d", user_id, room_id)
        if gateway is not None:
            gateway.publish(*events.status_changed(record, name, now))
    return record


def _join(
    engine: Engine, room_id: int, user_id: int, now: datetime
) -> tuple[MembershipRecord, bool, str]:
    with Session(engine, expire_on_commit=False) as session:
        require_active_room(session, room_id)
        row = lock_membership(session, room_id, user_id)
        if row is None:
            record = MembershipRecord.new(room_id, user_id, now)
            session.add(ChatRoomUser(
                room_id=room_id,
                user_id=user_id,
                joined_at=record.joined_at,
                last_seen_at=record.last_seen_at,
                is_online=True,
            ))
            was_online = False
        else:
            current = MembershipRecord.from_row(row)
            if is_effectively_banned(current, now):
                raise Forbidden("You are banned from this chat room")
            was_online = current.is_online
            record = presence.heartbeat(current, now)
            record.apply_to(row)
        name = user_name(session, user_id)
        session.commit()
    return record, was_online, name


def leave_room(
    engine: Engine,
    room_id: int,
    user_id: int,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Leaving marks the membership offline; the row is kept."""
    from parley.services import presence_service

    return presence_service.mark_offline(engine, room_id, user_id, gateway=gateway, now=now)
