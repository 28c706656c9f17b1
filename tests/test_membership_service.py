"""
tests/test_membership_service.py — Join, leave, heartbeat & presence sweep
===========================================================================
Runs the services against in-memory SQLite and checks both persisted state
and the ``user.status.changed`` events published to a real gateway.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import CLOSED_ROOM_ID, DANA_ID, MEMBER_ID, OTHER_ROOM_ID, ROOM_ID, T0
from parley.constants import EVENT_USER_STATUS_CHANGED, room_channel
from parley.database.models import ChatRoomUser
from parley.engine.broadcast import BroadcastGateway
from parley.errors import Forbidden, NotFound
from parley.services import membership_service, moderation_service, presence_service


def _drain(sub) -> list[dict]:
    out = []
    while not sub.queue.empty():
        out.append(sub.queue.get_nowait())
    return out


@pytest.fixture
def gateway():
    return BroadcastGateway()


class TestJoinRoom:
    def test_first_join_creates_online_membership(self, seeded_engine, gateway):
        sub = gateway.subscribe(room_channel(ROOM_ID))
        record = membership_service.join_room(
            seeded_engine, ROOM_ID, MEMBER_ID, gateway=gateway, now=T0,
        )

        assert record.is_online and not record.is_muted and not record.is_banned
        assert record.joined_at == record.last_seen_at == T0

        with Session(seeded_engine) as session:
            rows = session.scalars(select(ChatRoomUser)).all()
        assert len(rows) == 1

        [event] = _drain(sub)
        assert event["event"] == EVENT_USER_STATUS_CHANGED
        assert event["data"]["user"] == {"id": MEMBER_ID, "name": "Cleo"}
        assert event["data"]["is_online"] is True

    def test_rejoin_keeps_joined_at(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        presence_service.mark_offline(seeded_engine, ROOM_ID, MEMBER_ID)
        again = membership_service.join_room(
            seeded_engine, ROOM_ID, MEMBER_ID, now=T0 + timedelta(hours=1),
        )
        assert again.joined_at == T0
        assert again.last_seen_at == T0 + timedelta(hours=1)
        assert again.is_online

    def test_join_while_online_publishes_nothing(self, seeded_engine, gateway):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        sub = gateway.subscribe(room_channel(ROOM_ID))
        membership_service.join_room(
            seeded_engine, ROOM_ID, MEMBER_ID, gateway=gateway, now=T0 + timedelta(seconds=5),
        )
        assert _drain(sub) == []

    def test_unknown_or_inactive_room(self, seeded_engine):
        with pytest.raises(NotFound):
            membership_service.join_room(seeded_engine, 999, MEMBER_ID)
        with pytest.raises(NotFound):
            membership_service.join_room(seeded_engine, CLOSED_ROOM_ID, MEMBER_ID)

    def test_banned_member_cannot_rejoin(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        moderation_service.ban_user(seeded_engine, ROOM_ID, MEMBER_ID, 1, now=T0)
        with pytest.raises(Forbidden):
            membership_service.join_room(
                seeded_engine, ROOM_ID, MEMBER_ID, now=T0 + timedelta(minutes=1),
            )

    def test_expired_ban_allows_rejoin(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        moderation_service.ban_user(
            seeded_engine, ROOM_ID, MEMBER_ID, 1, duration_minutes=5, now=T0,
        )
        record = membership_service.join_room(
            seeded_engine, ROOM_ID, MEMBER_ID, now=T0 + timedelta(minutes=6),
        )
        assert record.is_online
        assert record.is_banned  # raw flag survives until unban / reconciliation


class TestLeaveAndHeartbeat:
    def test_leave_marks_offline_and_keeps_row(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        record = membership_service.leave_room(seeded_engine, ROOM_ID, MEMBER_ID)
        assert record.is_online is False
        assert record.last_seen_at == T0
        assert membership_service.get_membership(seeded_engine, ROOM_ID, MEMBER_ID) is not None

    def test_mark_offline_twice_publishes_once(self, seeded_engine, gateway):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        sub = gateway.subscribe(room_channel(ROOM_ID))
        first = presence_service.mark_offline(seeded_engine, ROOM_ID, MEMBER_ID, gateway=gateway)
        second = presence_service.mark_offline(seeded_engine, ROOM_ID, MEMBER_ID, gateway=gateway)
        assert first == second
        assert len(_drain(sub)) == 1

    def test_heartbeat_requires_membership(self, seeded_engine):
        with pytest.raises(NotFound):
            presence_service.heartbeat(seeded_engine, ROOM_ID, MEMBER_ID)

    def test_heartbeat_brings_member_back_online(self, seeded_engine, gateway):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        presence_service.mark_offline(seeded_engine, ROOM_ID, MEMBER_ID)
        sub = gateway.subscribe(room_channel(ROOM_ID))

        record = presence_service.heartbeat(
            seeded_engine, ROOM_ID, MEMBER_ID, gateway=gateway, now=T0 + timedelta(minutes=3),
        )
        assert record.is_online
        assert record.last_seen_at == T0 + timedelta(minutes=3)
        [event] = _drain(sub)
        assert event["data"]["is_online"] is True

    def test_heartbeat_clamps_to_joined_at(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        record = presence_service.heartbeat(
            seeded_engine, ROOM_ID, MEMBER_ID, now=T0 - timedelta(minutes=10),
        )
        assert record.last_seen_at == T0

    def test_banned_member_heartbeat_is_refused_and_stays_offline(self, seeded_engine, gateway):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        moderation_service.ban_user(seeded_engine, ROOM_ID, MEMBER_ID, 1, now=T0)
        sub = gateway.subscribe(room_channel(ROOM_ID))

        with pytest.raises(Forbidden):
            presence_service.heartbeat(
                seeded_engine, ROOM_ID, MEMBER_ID, gateway=gateway,
                now=T0 + timedelta(seconds=30),
            )

        assert not membership_service.get_membership(seeded_engine, ROOM_ID, MEMBER_ID).is_online
        assert membership_service.online_count(seeded_engine, ROOM_ID) == 0
        assert _drain(sub) == []

    def test_heartbeat_allowed_once_ban_expires(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        moderation_service.ban_user(
            seeded_engine, ROOM_ID, MEMBER_ID, 1, duration_minutes=5, now=T0,
        )
        record = presence_service.heartbeat(
            seeded_engine, ROOM_ID, MEMBER_ID, now=T0 + timedelta(minutes=6),
        )
        assert record.is_online


class TestSweepStale:
    def test_only_stale_online_members_go_offline(self, seeded_engine, gateway):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        membership_service.join_room(seeded_engine, ROOM_ID, DANA_ID, now=T0)
        presence_service.heartbeat(
            seeded_engine, ROOM_ID, DANA_ID, now=T0 + timedelta(minutes=4),
        )
        sub = gateway.subscribe(room_channel(ROOM_ID))

        changed = presence_service.sweep_stale(
            seeded_engine, timedelta(minutes=5), gateway=gateway, now=T0 + timedelta(minutes=6),
        )

        assert [(r.room_id, r.user_id) for r in changed] == [(ROOM_ID, MEMBER_ID)]
        assert membership_service.get_membership(seeded_engine, ROOM_ID, DANA_ID).is_online
        assert not membership_service.get_membership(seeded_engine, ROOM_ID, MEMBER_ID).is_online
        [event] = _drain(sub)
        assert event["data"]["user"]["id"] == MEMBER_ID
        assert event["data"]["is_online"] is False

    def test_sweep_is_noop_when_fresh(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        assert presence_service.sweep_stale(
            seeded_engine, timedelta(minutes=5), now=T0 + timedelta(minutes=1),
        ) == []


class TestReads:
    def test_list_members_and_online_count(self, seeded_engine):
        membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
        membership_service.join_room(seeded_engine, ROOM_ID, DANA_ID, now=T0)
        membership_service.join_room(seeded_engine, OTHER_ROOM_ID, DANA_ID, now=T0)
        presence_service.mark_offline(seeded_engine, ROOM_ID, DANA_ID)

        everyone = membership_service.list_room_members(seeded_engine, ROOM_ID)
        online = membership_service.list_room_members(seeded_engine, ROOM_ID, online_only=True)

        assert {m["user_id"] for m in everyone} == {MEMBER_ID, DANA_ID}
        assert [m["user_name"] for m in online] == ["Cleo"]
        assert membership_service.online_count(seeded_engine, ROOM_ID) == 1
        assert membership_service.online_count(seeded_engine, OTHER_ROOM_ID) == 1
