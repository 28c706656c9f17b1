"""
parley.engine.relay — Cross-process event relay over PG LISTEN/NOTIFY
======================================================================

The API may run several workers, and the periodic worker is a separate
process.  A subscriber connected to one process must still see events
published by another, so every published envelope is also sent with
``NOTIFY parley_events`` and every process LISTENs on that channel and
replays foreign envelopes into its local gateway.

Each process tags outgoing envelopes with a random ``origin`` id and
ignores its own echoes.
"""

from __future__ import annotations

import json
import logging
import random
import select
import threading
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from parley.engine.broadcast import BroadcastGateway

logger = logging.getLogger(__name__)

# PG channel for cross-process broadcast envelopes
EVENT_NOTIFY_CHANNEL = "parley_events"

# PostgreSQL rejects NOTIFY payloads of 8000 bytes or more
MAX_NOTIFY_BYTES = 7999

# Listener reconnect policy
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MAX_ATTEMPTS = 10
POLL_SECONDS = 5.0


def reconnect_delay(attempt: int) -> float:
    """Exponential backoff for *attempt* (1-based) plus up to 50% jitter."""
    backoff = min(RECONNECT_BASE_SECONDS * 2 ** (attempt - 1), RECONNECT_MAX_SECONDS)
    return backoff + random.uniform(0, backoff / 2)


class PgEventRelay:
    """Forward envelopes via NOTIFY and replay foreign ones from LISTEN.

    Usage::

        relay = PgEventRelay(engine, gateway)
        gateway.attach_relay(relay)
        relay.start_listener()
        ...
        relay.stop_listener()
    """

    def __init__(
        self,
        engine: Engine,
        gateway: BroadcastGateway,
        origin: str | None = None,
    ) -> None:
        self._engine = engine
        self._gateway = gateway
        self.origin = origin or uuid.uuid4().hex

        self._listener_healthy = False
        self._listener_failed = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------
    # Outgoing
    # -------------------------------------------------------------------
    def encode(self, envelope: dict) -> str:
        return json.dumps({**envelope, "origin": self.origin}, default=str)

    def forward(self, envelope: dict) -> bool:
        """Send *envelope* on the NOTIFY channel.  Returns False if skipped."""
        raw = self.encode(envelope)
        size = len(raw.encode("utf-8"))
        if size > MAX_NOTIFY_BYTES:
            logger.warning(
                "Envelope '%s' on '%s' too large for NOTIFY (%d bytes) — not relayed",
                envelope.get("event"), envelope.get("channel"), size,
            )
            return False
        with self._engine.connect() as conn:
            conn.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": EVENT_NOTIFY_CHANNEL, "payload": raw},
            )
            conn.commit()
        return True

    # -------------------------------------------------------------------
    # Incoming
    # -------------------------------------------------------------------
    def handle_payload(self, raw_payload: str) -> bool:
        """Parse a NOTIFY payload and replay it locally.

        Returns True if the envelope was delivered to the gateway.
        """
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Relay payload is not JSON: %r", raw_payload)
            return False

        if not isinstance(data, dict) or "channel" not in data or "event" not in data:
            logger.warning("Relay payload missing 'channel'/'event': %r", raw_payload)
            return False

        if data.pop("origin", None) == self.origin:
            return False

        data.setdefault("data", {})
        self._gateway.deliver_local(data)
        return True

    # -------------------------------------------------------------------
    # Listener thread
    # -------------------------------------------------------------------
    @property
    def listener_healthy(self) -> bool:
        """Connected and still within the reconnect budget."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """The listener gave up after ``RECONNECT_MAX_ATTEMPTS`` failures."""
        return self._listener_failed

    def start_listener(self) -> None:
        """LISTEN on a raw psycopg2 connection in a daemon thread.

        ``select()`` with a timeout keeps the thread responsive to
        :meth:`stop_listener`; the asyncio loop is never involved.
        """
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="pg-event-relay")
        self._thread.start()
        logger.info("PG NOTIFY relay listener thread started")

    def stop_listener(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
            logger.info("PG NOTIFY relay listener stopped")

    def _dsn(self) -> str:
        # str(url) masks the password, psycopg2 needs it in clear.
        url = self._engine.url.set(drivername="postgresql")
        return url.render_as_string(hide_password=False)

    def _run(self) -> None:
        import psycopg2

        failures = 0
        while not self._stop.is_set():
            conn = None
            try:
                conn = psycopg2.connect(self._dsn())
                conn.autocommit = True
                with conn.cursor() as cur:
                    cur.execute(f"LISTEN {EVENT_NOTIFY_CHANNEL};")
                logger.info("PG LISTEN started on channel '%s'", EVENT_NOTIFY_CHANNEL)
                failures = 0
                self._listener_healthy = True
                self._pump(conn)
            except Exception:
                self._listener_healthy = False
                failures += 1
                if failures >= RECONNECT_MAX_ATTEMPTS:
                    logger.critical(
                        "PG LISTEN failed %d times in a row; cross-process broadcast disabled",
                        failures,
                    )
                    self._listener_failed = True
                    return
                delay = reconnect_delay(failures)
                logger.exception(
                    "PG LISTEN connection lost (%d/%d), reconnecting in %.1fs",
                    failures, RECONNECT_MAX_ATTEMPTS, delay,
                )
                if self._stop.wait(timeout=delay):
                    return
            finally:
                if conn is not None and not conn.closed:
                    conn.close()

    def _pump(self, conn) -> None:
        """Replay notifications from *conn* until stopped or the socket drops."""
        while not self._stop.is_set():
            readable, _, _ = select.select([conn], [], [], POLL_SECONDS)
            if not readable:
                continue
            conn.poll()
            while conn.notifies:
                notify = conn.notifies.pop(0)
                try:
                    self.handle_payload(notify.payload or "")
                except Exception:
                    logger.exception("Error replaying relay payload %r", notify.payload)
