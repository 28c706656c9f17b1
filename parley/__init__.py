"""
Parley — Chat Room Presence & Moderation Service
=================================================
Tracks who is in which chat room and whether they are online, enforces
mute/ban moderation with optional expiry, reacts to realtime socket
disconnects, and fans presence/moderation events out to subscribers.

Package layout::

    parley/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Channel names, event names, duration limits
    ├── errors.py          # NotFound / Forbidden / InvalidAction / InvalidSignal
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # ORM models (users, rooms, memberships, audit)
    ├── engine/
    │   ├── membership.py  # MembershipRecord — plain, immutable record
    │   ├── presence.py    # Heartbeat / offline / staleness rules
    │   ├── moderation.py  # Effective mute/ban, can_post, mute/ban transitions
    │   ├── events.py      # (channel, event, payload) builders
    │   ├── broadcast.py   # In-process pub/sub gateway
    │   ├── relay.py       # Cross-process relay via PG LISTEN/NOTIFY
    │   └── signals.py     # Signal kind → handler function table
    ├── services/
    │   ├── membership_service.py  # Repository + atomic row updates
    │   ├── presence_service.py    # Heartbeat, offline, stale sweep
    │   ├── moderation_service.py  # Audited mute/ban/unmute/unban
    │   ├── disconnect_service.py  # Disconnect handler + task queue
    │   ├── chat_service.py        # Message posting behind can_post
    │   ├── knowledge_service.py   # Knowledge index rebuild trigger
    │   └── policy.py              # Moderator capability check
    ├── worker/
    │   ├── __main__.py    # python -m parley.worker
    │   └── tasks.py       # Periodic stale sweep + moderation reconciliation
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT + engine/gateway dependencies
        └── routes/        # Rooms, moderation, realtime, admin endpoints
"""

__version__ = "0.1.0"
