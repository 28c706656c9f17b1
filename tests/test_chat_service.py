"""
tests/test_chat_service.py — Message posting and deletion under the Moderation Guard
=====================================================================================
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import ADMIN_ID, CREATOR_ID, DANA_ID, MEMBER_ID, OUTSIDER_ID, ROOM_ID, T0
from parley.constants import EVENT_MESSAGE_DELETED, EVENT_MESSAGE_SENT, room_channel
from parley.database.models import ChatMessage, ModerationAction, ModerationActionType
from parley.engine.broadcast import BroadcastGateway
from parley.errors import Forbidden, InvalidAction, NotFound
from parley.services import chat_service, membership_service, moderation_service


@pytest.fixture
def room(seeded_engine):
    membership_service.join_room(seeded_engine, ROOM_ID, MEMBER_ID, now=T0)
    return seeded_engine


class TestPostMessage:
    def test_posts_trims_and_publishes(self, room):
        gateway = BroadcastGateway()
        sub = gateway.subscribe(room_channel(ROOM_ID))
        later = T0 + timedelta(minutes=2)

        msg = chat_service.post_message(room, ROOM_ID, MEMBER_ID, "  hello  ", gateway=gateway, now=later)

        assert msg.id is not None and msg.message == "hello"
        envelope = sub.queue.get_nowait()
        assert envelope["event"] == EVENT_MESSAGE_SENT
        assert envelope["data"]["user"] == {"id": MEMBER_ID, "name": "Cleo"}
        assert envelope["data"]["message"] == "hello"

        # Posting counts as activity
        assert membership_service.get_membership(room, ROOM_ID, MEMBER_ID).last_seen_at == later

    def test_requires_membership(self, room):
        with pytest.raises(NotFound):
            chat_service.post_message(room, ROOM_ID, OUTSIDER_ID, "hi")

    @pytest.mark.parametrize("text", ["", "   ", "x" * 1001])
    def test_length_bounds(self, room, text):
        with pytest.raises(InvalidAction):
            chat_service.post_message(room, ROOM_ID, MEMBER_ID, text)

    def test_exactly_max_length_is_accepted(self, room):
        msg = chat_service.post_message(room, ROOM_ID, MEMBER_ID, "x" * 1000)
        assert len(msg.message) == 1000

    def test_timed_mute_blocks_then_lapses(self, room):
        moderation_service.mute_user(
            room, ROOM_ID, MEMBER_ID, ADMIN_ID, duration_minutes=10, now=T0,
        )
        with pytest.raises(Forbidden, match="muted"):
            chat_service.post_message(
                room, ROOM_ID, MEMBER_ID, "hi", now=T0 + timedelta(minutes=5),
            )
        msg = chat_service.post_message(
            room, ROOM_ID, MEMBER_ID, "back", now=T0 + timedelta(minutes=11),
        )
        assert msg.message == "back"

    def test_indefinite_ban_blocks_until_unban(self, room):
        moderation_service.ban_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID, now=T0)
        with pytest.raises(Forbidden, match="banned"):
            chat_service.post_message(
                room, ROOM_ID, MEMBER_ID, "hi", now=T0 + timedelta(days=30),
            )
        moderation_service.unban_user(room, ROOM_ID, MEMBER_ID, ADMIN_ID)
        assert chat_service.post_message(room, ROOM_ID, MEMBER_ID, "ok").message == "ok"

    def test_muted_room_creator_may_still_post(self, room):
        membership_service.join_room(room, ROOM_ID, CREATOR_ID, now=T0)
        moderation_service.mute_user(room, ROOM_ID, CREATOR_ID, ADMIN_ID, now=T0)

        msg = chat_service.post_message(
            room, ROOM_ID, CREATOR_ID, "still here", now=T0 + timedelta(minutes=1),
        )
        assert msg.user_id == CREATOR_ID

    def test_banned_admin_may_still_post(self, room):
        membership_service.join_room(room, ROOM_ID, ADMIN_ID, now=T0)
        moderation_service.ban_user(room, ROOM_ID, ADMIN_ID, CREATOR_ID, now=T0)
        assert chat_service.post_message(room, ROOM_ID, ADMIN_ID, "hi").message == "hi"


def _audit(engine) -> list[ModerationAction]:
    with Session(engine) as session:
        return list(session.scalars(select(ModerationAction).order_by(ModerationAction.id)))


def _message_ids(engine) -> list[int]:
    with Session(engine) as session:
        return list(session.scalars(select(ChatMessage.id)))


class TestDeleteMessage:
    @pytest.fixture
    def posted(self, room):
        membership_service.join_room(room, ROOM_ID, DANA_ID, now=T0)
        return chat_service.post_message(room, ROOM_ID, MEMBER_ID, "regrettable", now=T0)

    def test_author_deletes_without_audit(self, room, posted):
        gateway = BroadcastGateway()
        sub = gateway.subscribe(room_channel(ROOM_ID))
        later = T0 + timedelta(minutes=1)

        chat_service.delete_message(room, ROOM_ID, posted.id, MEMBER_ID, gateway=gateway, now=later)

        assert _message_ids(room) == []
        assert _audit(room) == []
        envelope = sub.queue.get_nowait()
        assert envelope["event"] == EVENT_MESSAGE_DELETED
        assert envelope["data"] == {
            "id": posted.id,
            "room_id": ROOM_ID,
            "deleted_by": MEMBER_ID,
            "reason": None,
            "timestamp": later.isoformat(),
        }

    def test_other_member_is_forbidden(self, room, posted):
        with pytest.raises(Forbidden):
            chat_service.delete_message(room, ROOM_ID, posted.id, DANA_ID)
        assert _message_ids(room) == [posted.id]

    @pytest.mark.parametrize("moderator", [ADMIN_ID, CREATOR_ID])
    def test_moderator_delete_is_audited(self, room, posted, moderator):
        chat_service.delete_message(room, ROOM_ID, posted.id, moderator, reason="off topic")

        assert _message_ids(room) == []
        [action] = _audit(room)
        assert action.action_type == ModerationActionType.DELETE_MESSAGE
        assert action.moderator_id == moderator
        assert action.target_user_id == MEMBER_ID
        assert action.metadata_["message_id"] == posted.id
        assert action.reason == "off topic"
        assert action.metadata_["original_message"] == "regrettable"

    def test_unknown_or_foreign_room_message_is_not_found(self, room, posted):
        with pytest.raises(NotFound):
            chat_service.delete_message(room, ROOM_ID, posted.id + 100, MEMBER_ID)
        with pytest.raises(NotFound):
            chat_service.delete_message(room, ROOM_ID + 1, posted.id, MEMBER_ID)
