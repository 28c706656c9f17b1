"""
tests/test_moderation_service.py — Moderation Guard persistence tests
======================================================================
Covers capability checks (admin / room creator), self-moderation, the
audit trail, room events, status reads and expiry reconciliation.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import (
    ADMIN_ID,
    CLOSED_ROOM_ID,
    CREATOR_ID,
    DANA_ID,
    MEMBER_ID,
    OUTSIDER_ID,
    ROOM_ID,
    T0,
)
from parley.constants import (
    EVENT_USER_BANNED,
    EVENT_USER_MUTED,
    EVENT_USER_STATUS_CHANGED,
    EVENT_USER_UNBANNED,
    EVENT_USER_UNMUTED,
    room_channel,
)
from parley.database.models import ModerationAction, ModerationActionType
from parley.engine.broadcast import BroadcastGateway
from parley.errors import Forbidden, InvalidAction, NotFound
from parley.services import membership_service, moderation_service


@pytest.fixture
def room(seeded_engine):
    """ROOM_ID with MEMBER_ID and DANA_ID joined at T0."""
    membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
    membership_service.join_room(seeded_engine, ROOM_ID, DANA_ID, now=T0)
    return seeded_engine


def _actions(engine) -> list[ModerationAction]:
    with Session(engine) as session:
        return list(session.scalars(select(ModerationAction).order_by(ModerationAction.id)))


class TestCapability:
    @pytest.mark.parametrize("moderator", [ADMIN_ID, CREATOR_ID])
    def test_admin_and_creator_may_mute(self, room, moderator):
        record = moderation_service.mute_user(room, ROOM_ID, MEMBER_ID, moderator, now=T0)
        assert record.is_muted and record.muted_by == moderator

    def test_plain_member_is_forbidden(self, room):
        with pytest.raises(Forbidden):
            moderation_service.mute_user(room, ROOM_ID, MEMBER_ID, DANA_ID, now=T0)
        assert _actions(room) == []

    def test_self_moderation_rejected(self, room):
        with pytest.raises(InvalidAction):
            moderation_service.mute_user(room, ROOM_ID, ADMIN_ID, ADMIN_ID)
        with pytest.raises(InvalidAction):
            moderation_service.ban_user(room, ROOM_ID, CREATOR_ID, CREATOR_ID)

    def test_capability_checked_before_self_target(self, room):
        with pytest.raises(Forbidden):
            moderation_service.mute_user(room, ROOM_ID, MEMBER_ID, MEMBER_ID)
        with pytest.raises(Forbidden):
            moderation_service.ban_user(room, ROOM_ID, DANA_ID, DANA_ID)
        assert _actions(room) == []

    def test_target_without_membership(self, room):
        with pytest.raises(NotFound):
            moderation_service.mute_user(room, ROOM_ID, OUTSIDER_ID, ADMIN_ID)

    def test_inactive_room(self, room):
        with pytest.raises(NotFound):
            moderation_service.ban_user(room, CLOSED_ROOM_ID, MEMBER_ID, ADMIN_ID)

    @pytest.mark.parametrize("minutes", [0, -5, 10081])
    def test_mute_duration_limits(self, room, minutes):
        with pytest.raises(InvalidAction):
            moderation_service.mute_user(
                room, ROOM_ID, MEMBER_ID, ADMIN_ID, duration_minutes=minutes,
            )

    def test_ban_allows_up_to_a_year(self, room):
        record = moderation_service.ban_user(
            room, ROOM_ID, MEMBER_ID, ADMIN_ID, duration_minutes=525600, now=T0,
        )
        assert record.banned_until == T0 + timedelta(days=365)
        with pytest.raises(InvalidAction):
            moderation_service.ban_user(
                room, ROOM_ID, MEMBER_ID, ADMIN_ID, duration_minutes=525601,
            )

    def test_reason_too_long(self, room):
        with pytest.raises(InvalidAction):
            moderation_service.mute_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID, reason="x" * 501)


class TestMutations:
    def test_mute_writes_audit_and_publishes(self, room):
        gateway = BroadcastGateway()
        sub = gateway.subscribe(room_channel(ROOM_ID))

        moderation_service.mute_user(
            room, ROOM_ID, MEMBER_ID, CREATOR_ID,
            duration_minutes=10, reason="  spam  ", gateway=gateway, now=T0,
        )

        [action] = _actions(room)
        assert action.action_type == ModerationActionType.MUTE_USER
        assert action.moderator_id == CREATOR_ID
        assert action.reason == "spam"
        assert action.metadata_["duration_minutes"] == 10

        envelope = sub.queue.get_nowait()
        assert envelope["event"] == EVENT_USER_MUTED
        data = envelope["data"]
        assert data["user_id"] == MEMBER_ID
        assert data["moderator_id"] == CREATOR_ID
        assert data["muted_until"] == (T0 + timedelta(minutes=10)).isoformat()

    def test_ban_forces_offline_and_unban_leaves_it(self, room):
        gateway = BroadcastGateway()
        sub = gateway.subscribe(room_channel(ROOM_ID))

        banned = moderation_service.ban_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID, gateway=gateway)
        assert banned.is_banned and not banned.is_online and banned.banned_until is None

        unbanned = moderation_service.unban_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID, gateway=gateway)
        assert not unbanned.is_banned and unbanned.is_online is False

        envelopes = [sub.queue.get_nowait() for _ in range(3)]
        assert [e["event"] for e in envelopes] == [
            EVENT_USER_BANNED, EVENT_USER_STATUS_CHANGED, EVENT_USER_UNBANNED,
        ]
        assert envelopes[1]["data"]["user"] == {"id": MEMBER_ID, "name": "Cleo"}
        assert envelopes[1]["data"]["is_online"] is False
        assert sub.queue.empty()
        assert [a.action_type for a in _actions(room)] == ["ban_user", "unban_user"]

    def test_unmute_when_not_muted_is_ok(self, room):
        record = moderation_service.unmute_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID)
        assert not record.is_muted

    def test_ban_of_offline_member_publishes_no_status_change(self, room):
        membership_service.leave_room(room, ROOM_ID, MEMBER_ID)
        gateway = BroadcastGateway()
        sub = gateway.subscribe(room_channel(ROOM_ID))

        moderation_service.ban_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID, gateway=gateway)

        assert sub.queue.get_nowait()["event"] == EVENT_USER_BANNED
        assert sub.queue.empty()

    def test_unmute_and_unban_carry_reason(self, room):
        gateway = BroadcastGateway()
        moderation_service.mute_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID, now=T0)
        moderation_service.ban_user(room, ROOM_ID, DANA_ID, ADMIN_ID, now=T0)
        sub = gateway.subscribe(room_channel(ROOM_ID))

        moderation_service.unmute_user(
            room, ROOM_ID, MEMBER_ID, CREATOR_ID, reason="  apologised  ", gateway=gateway,
        )
        moderation_service.unban_user(room, ROOM_ID, DANA_ID, CREATOR_ID, gateway=gateway)

        unmute, unban = _actions(room)[-2:]
        assert unmute.action_type == ModerationActionType.UNMUTE_USER
        assert unmute.reason == "apologised"
        assert unban.reason is None

        unmuted = sub.queue.get_nowait()
        assert unmuted["event"] == EVENT_USER_UNMUTED
        assert unmuted["data"]["reason"] == "apologised"
        unbanned = sub.queue.get_nowait()
        assert unbanned["event"] == EVENT_USER_UNBANNED
        assert unbanned["data"]["reason"] is None

    def test_unban_reason_too_long(self, room):
        with pytest.raises(InvalidAction):
            moderation_service.unban_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID, reason="x" * 501)


class TestStatusAndAudit:
    def test_status_applies_lazy_expiry(self, room):
        moderation_service.mute_user(
            room, ROOM_ID, MEMBER_ID, ADMIN_ID, duration_minutes=10, now=T0,
        )
        during = moderation_service.get_moderation_status(
            room, ROOM_ID, MEMBER_ID, now=T0 + timedelta(minutes=5),
        )
        after = moderation_service.get_moderation_status(
            room, ROOM_ID, MEMBER_ID, now=T0 + timedelta(minutes=11),
        )
        assert during.is_muted and not during.can_send_messages
        assert not after.is_muted and after.can_send_messages and after.muted_until is None

        # Raw flag is still set: expiry is evaluated, not written.
        assert membership_service.get_membership(room, ROOM_ID, MEMBER_ID).is_muted

    def test_status_visibility(self, room):
        own = moderation_service.get_moderation_status(room, ROOM_ID, MEMBER_ID, viewer_id=MEMBER_ID)
        assert own.to_dict()["can_send_messages"] is True
        with pytest.raises(Forbidden):
            moderation_service.get_moderation_status(room, ROOM_ID, MEMBER_ID, viewer_id=DANA_ID)

    def test_list_actions_filters_and_pages(self, room):
        moderation_service.mute_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID)
        moderation_service.ban_user(room, ROOM_ID, DANA_ID, ADMIN_ID)
        moderation_service.unmute_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID)

        rows, total = moderation_service.list_moderation_actions(room, ROOM_ID, CREATOR_ID)
        assert total == 3
        assert [r.action_type for r in rows] == ["unmute_user", "ban_user", "mute_user"]

        rows, total = moderation_service.list_moderation_actions(
            room, ROOM_ID, ADMIN_ID, target_user_id=MEMBER_ID, page=2, page_size=1,
        )
        assert total == 2
        assert [r.action_type for r in rows] == ["mute_user"]

        with pytest.raises(Forbidden):
            moderation_service.list_moderation_actions(room, ROOM_ID, MEMBER_ID)


class TestReconcile:
    def test_clears_only_expired_flags(self, room):
        moderation_service.mute_user(
            room, ROOM_ID, MEMBER_ID, ADMIN_ID, duration_minutes=10, now=T0,
        )
        moderation_service.ban_user(room, ROOM_ID, DANA_ID, ADMIN_ID, now=T0)  # indefinite

        gateway = BroadcastGateway()
        sub = gateway.subscribe(room_channel(ROOM_ID))
        cleared = moderation_service.reconcile_expired(
            room, gateway=gateway, now=T0 + timedelta(minutes=15),
        )

        assert cleared == 1
        assert not membership_service.get_membership(room, ROOM_ID, MEMBER_ID).is_muted
        assert membership_service.get_membership(room, ROOM_ID, DANA_ID).is_banned
        assert _actions(room)[-1].action_type == ModerationActionType.EXPIRE_MUTE
        assert _actions(room)[-1].moderator_id is None
        assert sub.queue.get_nowait()["data"]["moderator_id"] is None

    def test_nothing_to_do(self, room):
        assert moderation_service.reconcile_expired(room, now=T0) == 0
