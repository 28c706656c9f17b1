"""
parley.services.presence_service — Presence Tracker
====================================================

Heartbeats, explicit offline transitions, and the periodic staleness
sweep.  The pure rules live in :mod:`parley.engine.presence`; this module
adds locking, persistence and the ``user.status.changed`` broadcast.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from parley.database.models import ChatRoomUser
from parley.engine import events, moderation, presence
from parley.engine.broadcast import BroadcastGateway
from parley.engine.membership import MembershipRecord, utcnow
from parley.errors import Forbidden
from parley.services.membership_service import require_membership, user_name

logger = logging.getLogger(__name__)


def heartbeat(
    engine: Engine,
    room_id: int,
    user_id: int,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Mark online and refresh ``last_seen_at``.

    Raises
    ------
    NotFound
        No membership for (room, user); the caller must join first.
    Forbidden
        The member is currently banned from the room.
    """
    now = now or utcnow()
    with Session(engine, expire_on_commit=False) as session:
        row = require_membership(session, room_id, user_id)
        before = MembershipRecord.from_row(row)
        if moderation.is_effectively_banned(before, now):
            raise Forbidden("You are banned from this chat room")
        record = presence.heartbeat(before, now)
        record.apply_to(row)
        name = user_name(session, user_id) if not before.is_online else None
        session.commit()

    if not before.is_online:
        logger.debug("User %d back online in room %d", user_id, room_id)
        if gateway is not None:
            gateway.publish(*events.status_changed(record, name, now))
    return record


def mark_offline(
    engine: Engine,
    room_id: int,
    user_id: int,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> MembershipRecord:
    """Set ``is_online`` false.  Idempotent; publishes only on a real flip."""
    now = now or utcnow()
    with Session(engine, expire_on_commit=False) as session:
        row = require_membership(session, room_id, user_id)
        before = MembershipRecord.from_row(row)
        record = presence.mark_offline(before)
        if record is before:
            return record
        record.apply_to(row)
        name = user_name(session, user_id)
        session.commit()

    logger.debug("User %d offline in room %d", user_id, room_id)
    if gateway is not None:
        gateway.publish(*events.status_changed(record, name, now))
    return record


def sweep_stale(
    engine: Engine,
    timeout: timedelta = presence.DEFAULT_PRESENCE_TIMEOUT,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> list[MembershipRecord]:
    """Downgrade every online membership whose presence is stale.

    Candidates are selected by ``last_seen_at``, then each row is locked
    and re-checked, so a heartbeat that lands between the two wins.
    Returns the records that were flipped offline.
    """
    now = now or utcnow()
    cutoff = now - timeout
    changed: list[tuple[MembershipRecord, str]] = []

    with Session(engine, expire_on_commit=False) as session:
        candidate_ids = session.scalars(
            select(ChatRoomUser.id).where(
                ChatRoomUser.is_online.is_(True),
                ChatRoomUser.last_seen_at < cutoff,
            )
        ).all()

        for pk in candidate_ids:
            row = session.scalars(
                select(ChatRoomUser).where(ChatRoomUser.id == pk).with_for_update()
            ).first()
            if row is None:
                continue
            before = MembershipRecord.from_row(row)
            if not presence.should_downgrade(before, timeout, now):
                continue
            record = presence.mark_offline(before)
            record.apply_to(row)
            changed.append((record, user_name(session, record.user_id)))
        session.commit()

    if changed:
        logger.info("Presence sweep marked %d membership(s) offline", len(changed))
    if gateway is not None:
        for record, name in changed:
            gateway.publish(*events.status_changed(record, name, now))
    return [record for record, _ in changed]
