"""
parley.engine.events — Broadcast payload builders
==================================================

One function per known event.  Each returns ``(channel, event_name,
payload)`` ready for :meth:`BroadcastGateway.publish`, so channel naming
and payload shape live in one place.
"""

from __future__ import annotations

from datetime import datetime

from parley.constants import (
    DISCONNECTIONS_CHANNEL,
    EVENT_KNOWLEDGE_INDEX_UPDATED,
    EVENT_MESSAGE_DELETED,
    EVENT_MESSAGE_SENT,
    EVENT_USER_BANNED,
    EVENT_USER_MUTED,
    EVENT_USER_STATUS_CHANGED,
    EVENT_USER_UNBANNED,
    EVENT_USER_UNMUTED,
    EVENT_WEBSOCKET_DISCONNECTED,
    KNOWLEDGE_INDEX_CHANNEL,
    room_channel,
)
from parley.engine.membership import MembershipRecord

Event = tuple[str, str, dict]


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def knowledge_index_updated(updated_at: datetime) -> Event:
    return KNOWLEDGE_INDEX_CHANNEL, EVENT_KNOWLEDGE_INDEX_UPDATED, {
        "updated_at": _iso(updated_at),
    }


def websocket_disconnected(
    user_id: int,
    user_name: str,
    connection_id: str | None,
    disconnected_at: datetime,
) -> Event:
    """The Disconnect Notification: built once, published once."""
    return DISCONNECTIONS_CHANNEL, EVENT_WEBSOCKET_DISCONNECTED, {
        "user_id": user_id,
        "user_name": user_name,
        "connection_id": connection_id,
        "disconnected_at": _iso(disconnected_at),
    }


def status_changed(
    record: MembershipRecord, user_name: str, changed_at: datetime
) -> Event:
    return room_channel(record.room_id), EVENT_USER_STATUS_CHANGED, {
        "user": {"id": record.user_id, "name": user_name},
        "room_id": record.room_id,
        "is_online": record.is_online,
        "status_changed_at": _iso(changed_at),
    }


def user_muted(
    record: MembershipRecord,
    moderator_id: int,
    duration_minutes: int | None,
    reason: str | None,
    timestamp: datetime,
) -> Event:
    return room_channel(record.room_id), EVENT_USER_MUTED, {
        "room_id": record.room_id,
        "user_id": record.user_id,
        "moderator_id": moderator_id,
        "duration_minutes": duration_minutes,
        "reason": reason,
        "muted_until": _iso(record.muted_until),
        "timestamp": _iso(timestamp),
    }


def user_unmuted(
    record: MembershipRecord,
    moderator_id: int | None,
    reason: str | None,
    timestamp: datetime,
) -> Event:
    return room_channel(record.room_id), EVENT_USER_UNMUTED, {
        "room_id": record.room_id,
        "user_id": record.user_id,
        "moderator_id": moderator_id,
        "reason": reason,
        "timestamp": _iso(timestamp),
    }


def user_banned(
    record: MembershipRecord,
    moderator_id: int,
    duration_minutes: int | None,
    reason: str | None,
    timestamp: datetime,
) -> Event:
    return room_channel(record.room_id), EVENT_USER_BANNED, {
        "room_id": record.room_id,
        "user_id": record.user_id,
        "moderator_id": moderator_id,
        "duration_minutes": duration_minutes,
        "reason": reason,
        "banned_until": _iso(record.banned_until),
        "timestamp": _iso(timestamp),
    }


def user_unbanned(
    record: MembershipRecord,
    moderator_id: int | None,
    reason: str | None,
    timestamp: datetime,
) -> Event:
    return room_channel(record.room_id), EVENT_USER_UNBANNED, {
        "room_id": record.room_id,
        "user_id": record.user_id,
        "moderator_id": moderator_id,
        "reason": reason,
        "timestamp": _iso(timestamp),
    }


def message_sent(
    message_id: int,
    room_id: int,
    user_id: int,
    user_name: str,
    text: str,
    created_at: datetime,
) -> Event:
    return room_channel(room_id), EVENT_MESSAGE_SENT, {
        "id": message_id,
        "room_id": room_id,
        "user": {"id": user_id, "name": user_name},
        "message": text,
        "created_at": _iso(created_at),
    }


def message_deleted(
    message_id: int,
    room_id: int,
    deleted_by: int,
    reason: str | None,
    timestamp: datetime,
) -> Event:
    return room_channel(room_id), EVENT_MESSAGE_DELETED, {
        "id": message_id,
        "room_id": room_id,
        "deleted_by": deleted_by,
        "reason": reason,
        "timestamp": _iso(timestamp),
    }
