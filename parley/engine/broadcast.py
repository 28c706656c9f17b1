"""
parley.engine.broadcast — In-process Broadcast Gateway
=======================================================

**Why this file exists:**
Services announce state changes (presence flips, mutes, bans, messages,
disconnects) by name on a channel; WebSocket clients subscribed to that
channel receive them.  Delivery is fire-and-forget:

* no replay — a subscriber only sees events published after it subscribed;
* no wildcards — channel names are a flat namespace;
* bounded queues — a subscriber that stops draining loses events instead
  of stalling the publisher.

Publishers are usually sync service functions running in a worker thread
(see :func:`parley.database.engine.run_db`), so queue writes are handed to
the bound event loop with ``call_soon_threadsafe``.

When a :class:`parley.engine.relay.PgEventRelay` is attached, every
published envelope is also forwarded to other processes, which replay it
into their own subscribers via :meth:`BroadcastGateway.deliver_local`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from parley.engine.relay import PgEventRelay

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100

_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`BroadcastGateway.subscribe`."""

    channel: str
    queue: asyncio.Queue
    id: int = field(default_factory=lambda: next(_ids))


def make_envelope(channel: str, event_name: str, payload: dict) -> dict:
    return {"channel": channel, "event": event_name, "data": payload}


class BroadcastGateway:
    """Channel → subscriber queues.  Thread-safe ``publish``.

    Usage::

        gateway = BroadcastGateway()
        gateway.bind(asyncio.get_running_loop())
        sub = gateway.subscribe("chat.room.7")
        gateway.publish("chat.room.7", "user.muted", {...})
        envelope = await sub.queue.get()
        gateway.unsubscribe(sub)
    """

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._relay: PgEventRelay | None = None
        self.dropped = 0

    # -------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------
    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that owns subscriber queues."""
        self._loop = loop

    def attach_relay(self, relay: PgEventRelay | None) -> None:
        self._relay = relay

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(self, channel: str) -> Subscription:
        sub = Subscription(channel=channel, queue=asyncio.Queue(self._max_queue_size))
        with self._lock:
            self._subscribers[channel].add(sub)
        logger.debug("Subscription %d opened on '%s'", sub.id, channel)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Remove *sub*.  Unknown or already-removed subscriptions are ignored."""
        with self._lock:
            subs = self._subscribers.get(sub.channel)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.channel]
        logger.debug("Subscription %d closed on '%s'", sub.id, sub.channel)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))

    # -------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------
    def publish(self, channel: str, event_name: str, payload: dict) -> int:
        """Deliver to current local subscribers and forward to the relay.

        Returns the number of local subscribers the event was handed to.
        Never raises on delivery problems; relay failures are logged.
        """
        envelope = make_envelope(channel, event_name, payload)
        delivered = self.deliver_local(envelope)
        logger.debug(
            "Published '%s' on '%s' to %d subscriber(s)", event_name, channel, delivered,
        )

        if self._relay is not None:
            try:
                self._relay.forward(envelope)
            except Exception:
                logger.exception("Relay forward failed for '%s' on '%s'", event_name, channel)
        return delivered

    def deliver_local(self, envelope: dict) -> int:
        """Hand *envelope* to every local subscriber of its channel."""
        with self._lock:
            targets = list(self._subscribers.get(envelope["channel"], ()))
        if not targets:
            return 0

        loop = self._loop
        if loop is None or loop.is_closed() or _on_loop(loop):
            for sub in targets:
                self._offer(sub, envelope)
        else:
            for sub in targets:
                loop.call_soon_threadsafe(self._offer, sub, envelope)
        return len(targets)

    def _offer(self, sub: Subscription, envelope: dict) -> None:
        try:
            sub.queue.put_nowait(envelope)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Subscriber %d on '%s' is full — dropping '%s'",
                sub.id, sub.channel, envelope.get("event"),
            )


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
