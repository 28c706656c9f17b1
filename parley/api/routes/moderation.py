"""
parley.api.routes.moderation — Mute, ban, status & audit trail
===============================================================

All mutations require the caller to be an admin or the room's creator;
the service layer enforces it and raises :class:`parley.errors.Forbidden`.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from parley.api.deps import get_current_user_id, get_engine, get_gateway
from parley.constants import MAX_BAN_MINUTES, MAX_MUTE_MINUTES, MAX_REASON_LENGTH
from parley.database.models import ModerationActionType
from parley.services import moderation_service

router = APIRouter(prefix="/rooms/{room_id}/moderation", tags=["moderation"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class MuteRequest(BaseModel):
    duration_minutes: int | None = Field(default=None, ge=1, le=MAX_MUTE_MINUTES)
    reason: str | None = Field(default=None, max_length=MAX_REASON_LENGTH)


class BanRequest(BaseModel):
    duration_minutes: int | None = Field(default=None, ge=1, le=MAX_BAN_MINUTES)
    reason: str | None = Field(default=None, max_length=MAX_REASON_LENGTH)


class LiftRequest(BaseModel):
    """Optional body for DELETE mute/ban."""
    reason: str | None = Field(default=None, max_length=MAX_REASON_LENGTH)


# ---------------------------------------------------------------------------
# Mute
# ---------------------------------------------------------------------------
@router.post("/users/{user_id}/mute")
def mute_user(
    room_id: int,
    user_id: int,
    body: MuteRequest,
    moderator_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    record = moderation_service.mute_user(
        engine, room_id, user_id, moderator_id,
        duration_minutes=body.duration_minutes,
        reason=body.reason,
        gateway=gateway,
    )
    return {"message": "User muted successfully", "membership": record.to_dict()}


@router.delete("/users/{user_id}/mute")
def unmute_user(
    room_id: int,
    user_id: int,
    body: LiftRequest | None = None,
    moderator_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    record = moderation_service.unmute_user(
        engine, room_id, user_id, moderator_id,
        reason=body.reason if body else None,
        gateway=gateway,
    )
    return {"message": "User unmuted successfully", "membership": record.to_dict()}


# ---------------------------------------------------------------------------
# Ban
# ---------------------------------------------------------------------------
@router.post("/users/{user_id}/ban")
def ban_user(
    room_id: int,
    user_id: int,
    body: BanRequest,
    moderator_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    record = moderation_service.ban_user(
        engine, room_id, user_id, moderator_id,
        duration_minutes=body.duration_minutes,
        reason=body.reason,
        gateway=gateway,
    )
    return {"message": "User banned successfully", "membership": record.to_dict()}


@router.delete("/users/{user_id}/ban")
def unban_user(
    room_id: int,
    user_id: int,
    body: LiftRequest | None = None,
    moderator_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
    gateway=Depends(get_gateway),
):
    record = moderation_service.unban_user(
        engine, room_id, user_id, moderator_id,
        reason=body.reason if body else None,
        gateway=gateway,
    )
    return {"message": "User unbanned successfully", "membership": record.to_dict()}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}")
def moderation_status(
    room_id: int,
    user_id: int,
    viewer_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
):
    """Effective mute/ban state.  Members may read their own."""
    status = moderation_service.get_moderation_status(
        engine, room_id, user_id, viewer_id=viewer_id,
    )
    return status.to_dict()


@router.get("/actions")
def list_actions(
    room_id: int,
    action_type: ModerationActionType | None = None,
    target_user_id: int | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    moderator_id: int = Depends(get_current_user_id),
    engine=Depends(get_engine),
):
    """Paged moderation audit trail for the room, newest first."""
    rows, total = moderation_service.list_moderation_actions(
        engine, room_id, moderator_id,
        action_type=str(action_type) if action_type else None,
        target_user_id=target_user_id,
        page=page,
        page_size=page_size,
    )
    return {
        "actions": [
            {
                "id": a.id,
                "moderator_id": a.moderator_id,
                "target_user_id": a.target_user_id,
                "action_type": a.action_type,
                "reason": a.reason,
                "metadata": a.metadata_,
                "created_at": a.created_at.isoformat() if a.created_at else None,
            }
            for a in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
