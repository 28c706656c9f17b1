"""
parley.services.moderation_service — Moderation Guard (persistence side)
=========================================================================

Every moderation mutation follows the pattern:
  1. Begin transaction
  2. Check the room is active and the caller may moderate it
  3. Lock the target's membership row, apply the pure transition
  4. Write a ``chat_moderation_actions`` audit row
  5. Commit
  6. Publish the room event (``user.muted`` / ``user.unmuted`` /
     ``user.banned`` / ``user.unbanned``); a ban of an online member is
     also a ``user.status.changed`` to offline

Expiry is lazy; :func:`reconcile_expired` only tidies raw flags and is
never needed for correctness.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import Engine, func, or_, select
from sqlalchemy.orm import Session

from parley.constants import MAX_BAN_MINUTES, MAX_MUTE_MINUTES, MAX_REASON_LENGTH
from parley.database.models import ChatRoomUser, ModerationAction, ModerationActionType
from parley.engine import events, moderation
from parley.engine.broadcast import BroadcastGateway
from parley.engine.membership import MembershipRecord, utcnow
from parley.errors import InvalidAction, NotFound
from parley.services.membership_service import (
    get_membership,
    require_active_room,
    require_membership,
    user_name,
)
from parley.services.policy import require_moderator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _duration(minutes: int | None, maximum: int, label: str) -> timedelta | None:
    if minutes is None:
        return None
    if isinstance(minutes, bool) or not isinstance(minutes, int) or not 1 <= minutes <= maximum:
        raise InvalidAction(f"{label} duration must be between 1 and {maximum} minutes")
    return timedelta(minutes=minutes)


def clean_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    reason = reason.strip()
    if len(reason) > MAX_REASON_LENGTH:
        raise InvalidAction(f"Reason must be at most {MAX_REASON_LENGTH} characters")
    return reason or None


def record_action(
    session: Session,
    *,
    room_id: int,
    moderator_id: int | None,
    target_user_id: int,
    action_type: ModerationActionType,
    reason: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Insert a row into chat_moderation_actions within the current transaction."""
    session.add(ModerationAction(
        room_id=room_id,
        moderator_id=moderator_id,
        target_user_id=target_user_id,
        action_type=str(action_type),
        reason=reason,
        metadata_=metadata,
    ))


def _begin(
    session: Session,
    room_id: int,
    target_user_id: int,
    moderator_id: int,
    *,
    verb: str | None = None,
) -> tuple[ChatRoomUser, MembershipRecord]:
    """Room, capability, self-target (when *verb* is given), then the locked row."""
    require_active_room(session, room_id)
    require_moderator(session, moderator_id, room_id)
    if verb is not None and target_user_id == moderator_id:
        raise InvalidAction(f"You cannot {verb} yourself")
    row = require_membership(session, room_id, target_user_id)
    return row, MembershipRecord.from_row(row)


# ---------------------------------------------------------------------------
# Mute / unmute
# ---------------------------------------------------------------------------
def mute_user(
    engine: Engine,
    room_id: int,
    target_user_id: int,
    moderator_id: int,
    *,
    duration_minutes: int | None = None,
    reason: str | None = None,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Mute *target_user_id* in *room_id*.  ``duration_minutes=None`` is indefinite.

    Raises
    ------
    NotFound
        Room missing/inactive, or the target has no membership.
    Forbidden
        *moderator_id* is neither admin nor room creator.
    InvalidAction
        Self-mute, duration outside 1..10080, or reason too long.
    """
    now = now or utcnow()
    duration = _duration(duration_minutes, MAX_MUTE_MINUTES, "Mute")
    reason = clean_reason(reason)

    with Session(engine, expire_on_commit=False) as session:
        row, before = _begin(session, room_id, target_user_id, moderator_id, verb="mute")
        record = moderation.mute(before, moderator_id, duration, now)
        record.apply_to(row)
        record_action(
            session,
            room_id=room_id,
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            action_type=ModerationActionType.MUTE_USER,
            reason=reason,
            metadata={
                "duration_minutes": duration_minutes,
                "muted_until": record.muted_until.isoformat() if record.muted_until else None,
            },
        )
        session.commit()

    logger.info(
        "User %d muted in room %d by %d (%s)",
        target_user_id, room_id, moderator_id,
        f"{duration_minutes} min" if duration_minutes else "indefinite",
    )
    if gateway is not None:
        gateway.publish(*events.user_muted(record, moderator_id, duration_minutes, reason, now))
    return record


def unmute_user(
    engine: Engine,
    room_id: int,
    target_user_id: int,
    moderator_id: int,
    *,
    reason: str | None = None,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Clear a mute.  Unmuting a member who is not muted is a no-op success."""
    now = now or utcnow()
    reason = clean_reason(reason)
    with Session(engine, expire_on_commit=False) as session:
        row, before = _begin(session, room_id, target_user_id, moderator_id)
        record = moderation.unmute(before)
        record.apply_to(row)
        record_action(
            session,
            room_id=room_id,
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            action_type=ModerationActionType.UNMUTE_USER,
            reason=reason,
        )
        session.commit()

    logger.info("User %d unmuted in room %d by %d", target_user_id, room_id, moderator_id)
    if gateway is not None:
        gateway.publish(*events.user_unmuted(record, moderator_id, reason, now))
    return record


# ---------------------------------------------------------------------------
# Ban / unban
# ---------------------------------------------------------------------------
def ban_user(
    engine: Engine,
    room_id: int,
    target_user_id: int,
    moderator_id: int,
    *,
    duration_minutes: int | None = None,
    reason: str | None = None,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Ban *target_user_id* from *room_id* and force them offline.

    Same errors as :func:`mute_user`; the duration limit is 1..525600.
    """
    now = now or utcnow()
    duration = _duration(duration_minutes, MAX_BAN_MINUTES, "Ban")
    reason = clean_reason(reason)

    with Session(engine, expire_on_commit=False) as session:
        row, before = _begin(session, room_id, target_user_id, moderator_id, verb="ban")
        record = moderation.ban(before, moderator_id, duration, now)
        record.apply_to(row)
        record_action(
            session,
            room_id=room_id,
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            action_type=ModerationActionType.BAN_USER,
            reason=reason,
            metadata={
                "duration_minutes": duration_minutes,
                "banned_until": record.banned_until.isoformat() if record.banned_until else None,
            },
        )
        name = user_name(session, target_user_id) if before.is_online else None
        session.commit()

    logger.info(
        "User %d banned from room %d by %d (%s)",
        target_user_id, room_id, moderator_id,
        f"{duration_minutes} min" if duration_minutes else "indefinite",
    )
    if gateway is not None:
        gateway.publish(*events.user_banned(record, moderator_id, duration_minutes, reason, now))
        if before.is_online:
            gateway.publish(*events.status_changed(record, name, now))
    return record


def unban_user(
    engine: Engine,
    room_id: int,
    target_user_id: int,
    moderator_id: int,
    *,
    reason: str | None = None,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Clear a ban.  ``is_online`` is not touched."""
    now = now or utcnow()
    reason = clean_reason(reason)
    with Session(engine, expire_on_commit=False) as session:
        row, before = _begin(session, room_id, target_user_id, moderator_id)
        record = moderation.unban(before)
        record.apply_to(row)
        record_action(
            session,
            room_id=room_id,
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            action_type=ModerationActionType.UNBAN_USER,
            reason=reason,
        )
        session.commit()

    logger.info("User %d unbanned in room %d by %d", target_user_id, room_id, moderator_id)
    if gateway is not None:
        gateway.publish(*events.user_unbanned(record, moderator_id, reason, now))
    return record


# ---------------------------------------------------------------------------
# Status & audit reads
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ModerationStatus:
    room_id: int
    user_id: int
    is_muted: bool
    muted_until: datetime | None
    muted_by: int | None
    is_banned: bool
    banned_until: datetime | None
    banned_by: int | None
    can_send_messages: bool

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("muted_until", "banned_until"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def get_moderation_status(
    engine: Engine,
    room_id: int,
    user_id: int,
    *,
    viewer_id: int | None = None,
    now: datetime | None = None,
) -> ModerationStatus:
    """Effective (lazily expired) moderation state of one member.

    Members may read their own status; anyone else must be a moderator.
    """
    now = now or utcnow()
    if viewer_id is not None and viewer_id != user_id:
        with Session(engine) as session:
            require_moderator(session, viewer_id, room_id)
    record = get_membership(engine, room_id, user_id)
    if record is None:
        raise NotFound(f"User {user_id} is not a member of chat room {room_id}")

    muted = moderation.is_effectively_muted(record, now)
    banned = moderation.is_effectively_banned(record, now)
    return ModerationStatus(
        room_id=room_id,
        user_id=user_id,
        is_muted=muted,
        muted_until=record.muted_until if muted else None,
        muted_by=record.muted_by if muted else None,
        is_banned=banned,
        banned_until=record.banned_until if banned else None,
        banned_by=record.banned_by if banned else None,
        can_send_messages=not (muted or banned),
    )


def list_moderation_actions(
    engine: Engine,
    room_id: int,
    moderator_id: int,
    *,
    action_type: str | None = None,
    target_user_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[ModerationAction], int]:
    """Newest-first page of the room's audit trail and the total count.

    Only moderators of the room may read it.
    """
    with Session(engine) as session:
        require_moderator(session, moderator_id, room_id)

    filters = [ModerationAction.room_id == room_id]
    if action_type is not None:
        filters.append(ModerationAction.action_type == action_type)
    if target_user_id is not None:
        filters.append(ModerationAction.target_user_id == target_user_id)

    with Session(engine, expire_on_commit=False) as session:
        total = session.scalar(
            select(func.count()).select_from(ModerationAction).where(*filters)
        ) or 0
        rows = session.scalars(
            select(ModerationAction)
            .where(*filters)
            .order_by(ModerationAction.created_at.desc(), ModerationAction.id.desc())
            .offset((max(page, 1) - 1) * page_size)
            .limit(page_size)
        ).all()
        for row in rows:
            session.expunge(row)
        return list(rows), total


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
def reconcile_expired(
    engine: Engine,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> int:
    """Clear mute/ban flags whose expiry has passed.

    Writes an ``expire_mute`` / ``expire_ban`` audit row (moderator
    ``None`` = system) per cleared flag and returns how many were cleared.
    """
    now = now or utcnow()
    published: list[events.Event] = []
    cleared = 0

    with Session(engine, expire_on_commit=False) as session:
        rows = session.scalars(
            select(ChatRoomUser)
            .where(or_(
                ChatRoomUser.is_muted.is_(True) & ChatRoomUser.muted_until.is_not(None)
                & (ChatRoomUser.muted_until <= now),
                ChatRoomUser.is_banned.is_(True) & ChatRoomUser.banned_until.is_not(None)
                & (ChatRoomUser.banned_until <= now),
            ))
            .with_for_update()
        ).all()

        for row in rows:
            record = MembershipRecord.from_row(row)
            if moderation.mute_expired(record, now):
                record_action(
                    session,
                    room_id=record.room_id,
                    moderator_id=None,
                    target_user_id=record.user_id,
                    action_type=ModerationActionType.EXPIRE_MUTE,
                    metadata={"muted_until": record.muted_until.isoformat()},
                )
                record = moderation.unmute(record)
                published.append(events.user_unmuted(record, None, None, now))
                cleared += 1
            if moderation.ban_expired(record, now):
                record_action(
                    session,
                    room_id=record.room_id,
                    moderator_id=None,
                    target_user_id=record.user_id,
                    action_type=ModerationActionType.EXPIRE_BAN,
                    metadata={"banned_until": record.banned_until.isoformat()},
                )
                record = moderation.unban(record)
                published.append(events.user_unbanned(record, None, None, now))
                cleared += 1
            record.apply_to(row)
        session.commit()

    if cleared:
        logger.info("Reconciliation cleared %d expired moderation flag(s)", cleared)
    if gateway is not None:
        for event in published:
            gateway.publish(*event)
    return cleared
