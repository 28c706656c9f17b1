"""
parley.engine.moderation — Pure mute / ban rules
=================================================

Zero I/O.  Expiry is *lazy*: a mute or ban whose ``*_until`` has passed
stops being effective immediately, even though the raw ``is_muted`` /
``is_banned`` flag stays ``True`` until an explicit unmute/unban or the
worker's reconciliation pass.

All mutators are idempotent: muting an already-muted member overwrites the
moderator and expiry, unmuting an unmuted member changes nothing.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from parley.engine.membership import MembershipRecord


# ---------------------------------------------------------------------------
# Effective state
# ---------------------------------------------------------------------------
def _active(flag: bool, until: datetime | None, now: datetime) -> bool:
    return flag and (until is None or until > now)


def is_effectively_muted(record: MembershipRecord, now: datetime) -> bool:
    return _active(record.is_muted, record.muted_until, now)


def is_effectively_banned(record: MembershipRecord, now: datetime) -> bool:
    return _active(record.is_banned, record.banned_until, now)


def can_post(record: MembershipRecord, now: datetime) -> bool:
    """Posting is allowed iff the member is neither muted nor banned at *now*."""
    return not (is_effectively_muted(record, now) or is_effectively_banned(record, now))


def denial_reason(record: MembershipRecord, now: datetime) -> str | None:
    """Human-readable reason :func:`can_post` is false, or ``None``."""
    if is_effectively_banned(record, now):
        return "You are banned from this chat room"
    if is_effectively_muted(record, now):
        return "You are muted in this chat room"
    return None


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def _until(now: datetime, duration: timedelta | None) -> datetime | None:
    return now + duration if duration is not None else None


def mute(
    record: MembershipRecord,
    moderator_id: int,
    duration: timedelta | None,
    now: datetime,
) -> MembershipRecord:
    """Mute for *duration*, or indefinitely when *duration* is ``None``."""
    return replace(
        record,
        is_muted=True,
        muted_by=moderator_id,
        muted_until=_until(now, duration),
    )


def unmute(record: MembershipRecord) -> MembershipRecord:
    return replace(record, is_muted=False, muted_until=None, muted_by=None)


def ban(
    record: MembershipRecord,
    moderator_id: int,
    duration: timedelta | None,
    now: datetime,
) -> MembershipRecord:
    """Ban for *duration* (``None`` = indefinite).  A ban always forces offline."""
    return replace(
        record,
        is_banned=True,
        banned_by=moderator_id,
        banned_until=_until(now, duration),
        is_online=False,
    )


def unban(record: MembershipRecord) -> MembershipRecord:
    """Clear the ban.  The online flag is left for the next heartbeat to set."""
    return replace(record, is_banned=False, banned_until=None, banned_by=None)


# ---------------------------------------------------------------------------
# Reconciliation helpers
# ---------------------------------------------------------------------------
def mute_expired(record: MembershipRecord, now: datetime) -> bool:
    """Raw flag still set but the expiry has passed."""
    return record.is_muted and record.muted_until is not None and record.muted_until <= now


def ban_expired(record: MembershipRecord, now: datetime) -> bool:
    return record.is_banned and record.banned_until is not None and record.banned_until <= now
