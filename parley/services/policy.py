"""
parley.services.policy — Moderator capability check
====================================================

A user may moderate a room if they are a site admin or the room's creator.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from parley.database.models import ChatRoom, User
from parley.errors import Forbidden

logger = logging.getLogger(__name__)


def is_admin(session: Session, user_id: int) -> bool:
    user = session.get(User, user_id)
    return bool(user is not None and user.is_admin)


def has_moderator_role(session: Session, user_id: int, room_id: int) -> bool:
    """Return True if *user_id* may mute/ban members of *room_id*."""
    if is_admin(session, user_id):
        return True
    room = session.get(ChatRoom, room_id)
    return room is not None and room.created_by == user_id


def require_moderator(session: Session, user_id: int, room_id: int) -> None:
    """Raise :class:`Forbidden` unless *user_id* can moderate *room_id*."""
    if not has_moderator_role(session, user_id, room_id):
        logger.info("User %d denied moderation in room %d", user_id, room_id)
        raise Forbidden("You do not have permission to moderate this chat room")
