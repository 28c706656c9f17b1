"""
parley.api.routes.rooms — Join, leave, heartbeat, members & messages
=====================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from parley.api.deps import get_current_user_id, get_engine, get_gateway
from parley.constants import MAX_REASON_LENGTH
from parley.services import chat_service, membership_service, presence_service

router = APIRouter(prefix="/rooms", tags=["rooms"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class MessageCreate(BaseModel):
    message: str


class MessageDelete(BaseModel):
    reason: str | None = Field(default=None, max_length=MAX_REASON_LENGTH)


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------
@router.post("/{room_id}/join")
def join_room(
    room_id: int,
    user_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    """Join *room_id* (or come back online if already a member)."""
    record = membership_service.join_room(engine, room_id, user_id, gateway=gateway)
    return {"membership": record.to_dict()}


@router.post("/{room_id}/leave")
def leave_room(
    room_id: int,
    user_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    record = membership_service.leave_room(engine, room_id, user_id, gateway=gateway)
    return {"membership": record.to_dict()}


@router.post("/{room_id}/heartbeat")
def heartbeat(
    room_id: int,
    user_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    record = presence_service.heartbeat(engine, room_id, user_id, gateway=gateway)
    return {"is_online": record.is_online, "last_seen_at": record.last_seen_at.isoformat()}


@router.get("/{room_id}/members")
def list_members(
    room_id: int,
    online_only: bool = False,
    user_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
):
    """Room members, optionally only those currently online."""
    members = membership_service.list_room_members(engine, room_id, online_only=online_only)
    return {
        "members": members,
        "online_count": membership_service.online_count(engine, room_id),
    }


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
@router.post("/{room_id}/messages", status_code=status.HTTP_201_CREATED)
def post_message(
    room_id: int,
    body: MessageCreate,
    user_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    msg = chat_service.post_message(engine, room_id, user_id, body.message, gateway=gateway)
    return {
        "id": msg.id,
        "room_id": msg.room_id,
        "user_id": msg.user_id,
        "message": msg.message,
        "created_at": msg.created_at.isoformat(),
    }


@router.delete("/{room_id}/messages/{message_id}")
def delete_message(
    room_id: int,
    message_id: int,
    body: MessageDelete | None = None,
    user_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    """Authors may delete their own messages; moderators may delete any."""
    chat_service.delete_message(
        engine, room_id, message_id, user_id,
        reason=body.reason if body else None,
        gateway=gateway,
    )
    return {"message": "Message deleted successfully", "id": message_id}
