"""
parley.services.chat_service — Message posting and deletion
============================================================

Posting is where the Moderation Guard bites: a member who is effectively
muted or banned at the moment of posting is refused.  Moderators of the
room (site admins and the room creator) are exempt.

A message can be deleted by its author or by a moderator; a moderator
removing someone else's message leaves a ``delete_message`` audit row
holding the original text.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from parley.constants import MAX_MESSAGE_LENGTH, MIN_MESSAGE_LENGTH
from parley.database.models import ChatMessage, ModerationActionType
from parley.engine import events, presence
from parley.engine.broadcast import BroadcastGateway
from parley.engine.membership import MembershipRecord, utcnow
from parley.engine.moderation import denial_reason
from parley.errors import Forbidden, InvalidAction, NotFound
from parley.services.membership_service import require_active_room, require_membership, user_name
from parley.services.moderation_service import clean_reason, record_action
from parley.services.policy import has_moderator_role

logger = logging.getLogger(__name__)


def post_message(
    engine: Engine,
    room_id: int,
    user_id: int,
    text: str,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> ChatMessage:
    """Persist a message from *user_id* in *room_id*.

    Raises
    ------
    NotFound
        The user has no membership in the room.
    Forbidden
        The member is currently muted or banned and cannot moderate the room.
    InvalidAction
        The trimmed text is empty or longer than 1000 characters.
    """
    now = now or utcnow()
    with Session(engine, expire_on_commit=False) as session:
        row = require_membership(session, room_id, user_id)
        record = MembershipRecord.from_row(row)

        refusal = denial_reason(record, now)
        if refusal is not None and not has_moderator_role(session, user_id, room_id):
            logger.info("Rejected message from user %d in room %d: %s", user_id, room_id, refusal)
            raise Forbidden(refusal)

        body = (text or "").strip()
        if not MIN_MESSAGE_LENGTH <= len(body) <= MAX_MESSAGE_LENGTH:
            raise InvalidAction(
                f"Message must be between {MIN_MESSAGE_LENGTH} and "
                f"{MAX_MESSAGE_LENGTH} characters"
            )

        message = ChatMessage(room_id=room_id, user_id=user_id, message=body, created_at=now)
        session.add(message)
        presence.touch(record, now).apply_to(row)
        name = user_name(session, user_id)
        session.commit()

    if gateway is not None:
        gateway.publish(*events.message_sent(message.id, room_id, user_id, name, body, now))
    return message


def delete_message(
    engine: Engine,
    room_id: int,
    message_id: int,
    user_id: int,
    *,
    reason: str | None = None,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> None:
    """Delete *message_id* from *room_id* on behalf of *user_id*.

    Raises
    ------
    NotFound
        Room missing/inactive, or no such message in the room.
    Forbidden
        *user_id* is neither the author nor a moderator of the room.
    """
    now = now or utcnow()
    reason = clean_reason(reason)
    with Session(engine, expire_on_commit=False) as session:
        require_active_room(session, room_id)
        message = session.scalars(
            select(ChatMessage)
            .where(ChatMessage.id == message_id, ChatMessage.room_id == room_id)
            .with_for_update()
        ).first()
        if message is None:
            raise NotFound(f"Message {message_id} not found in chat room {room_id}")

        is_author = message.user_id == user_id
        if not is_author and not has_moderator_role(session, user_id, room_id):
            logger.info(
                "User %d denied deleting message %d in room %d", user_id, message_id, room_id,
            )
            raise Forbidden("You can only delete your own messages")

        if not is_author:
            record_action(
                session,
                room_id=room_id,
                moderator_id=user_id,
                target_user_id=message.user_id,
                action_type=ModerationActionType.DELETE_MESSAGE,
                reason=reason,
                metadata={
                    "message_id": message.id,
                    "original_message": message.message,
                    "created_at": message.created_at.isoformat() if message.created_at else None,
                },
            )
        session.delete(message)
        session.commit()

    logger.info("Message %d in room %d deleted by %d", message_id, room_id, user_id)
    if gateway is not None:
        gateway.publish(*events.message_deleted(message_id, room_id, user_id, reason, now))
