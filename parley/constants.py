"""
parley.constants — Shared Constants & Helpers
==============================================

Single source of truth for broadcast channel names, event names and
moderation limits.  Import from here instead of duplicating strings in
services, routes, and the worker.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Broadcast channels
# ---------------------------------------------------------------------------
KNOWLEDGE_INDEX_CHANNEL = "knowledge-index"
DISCONNECTIONS_CHANNEL = "websocket-disconnections"
ROOM_CHANNEL_PREFIX = "chat.room."


def room_channel(room_id: int) -> str:
    """Channel carrying room-scoped chat/presence/moderation updates."""
    return f"{ROOM_CHANNEL_PREFIX}{room_id}"


# ---------------------------------------------------------------------------
# Broadcast event names
# ---------------------------------------------------------------------------
EVENT_KNOWLEDGE_INDEX_UPDATED = "knowledge.index.updated"
EVENT_WEBSOCKET_DISCONNECTED = "websocket.disconnected"
EVENT_USER_STATUS_CHANGED = "user.status.changed"
EVENT_USER_MUTED = "user.muted"
EVENT_USER_UNMUTED = "user.unmuted"
EVENT_USER_BANNED = "user.banned"
EVENT_USER_UNBANNED = "user.unbanned"
EVENT_MESSAGE_SENT = "message.sent"
EVENT_MESSAGE_DELETED = "message.deleted"


# ---------------------------------------------------------------------------
# Moderation limits (minutes)
# ---------------------------------------------------------------------------
MAX_MUTE_MINUTES = 10080     # 1 week
MAX_BAN_MINUTES = 525600     # 1 year
MAX_REASON_LENGTH = 500

# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
MIN_MESSAGE_LENGTH = 1
MAX_MESSAGE_LENGTH = 1000
