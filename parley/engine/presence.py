"""
parley.engine.presence — Pure presence transitions
===================================================

Zero I/O.  Every function takes a :class:`MembershipRecord` and returns a
new one (or a bool); services persist the result.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from parley.engine.membership import MembershipRecord, utcnow

DEFAULT_PRESENCE_TIMEOUT = timedelta(minutes=5)


def heartbeat(record: MembershipRecord, now: datetime) -> MembershipRecord:
    """Mark the member online and refresh ``last_seen_at``.

    ``last_seen_at`` is clamped to ``joined_at`` so a skewed clock can never
    put the last activity before the join.
    """
    seen = max(now, record.joined_at)
    return replace(record, is_online=True, last_seen_at=seen)


def touch(record: MembershipRecord, now: datetime) -> MembershipRecord:
    """Refresh ``last_seen_at`` without changing the online flag."""
    return replace(record, last_seen_at=max(now, record.joined_at))


def mark_offline(record: MembershipRecord) -> MembershipRecord:
    """Set ``is_online`` false.  ``last_seen_at`` is left untouched."""
    if not record.is_online:
        return record
    return replace(record, is_online=False)


def is_stale(
    record: MembershipRecord,
    timeout: timedelta = DEFAULT_PRESENCE_TIMEOUT,
    now: datetime | None = None,
) -> bool:
    """True iff the last activity is older than *timeout* at *now*."""
    if now is None:
        now = utcnow()
    return now - record.last_seen_at > timeout


def should_downgrade(
    record: MembershipRecord, timeout: timedelta, now: datetime
) -> bool:
    """Online members whose presence went stale get flipped offline."""
    return record.is_online and is_stale(record, timeout, now)
