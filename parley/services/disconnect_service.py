"""
parley.services.disconnect_service — Disconnect Handler & queue
================================================================

**Why this file exists:**
When a realtime socket closes, the user must go offline in every room they
were online in, and listeners must learn about it.  The socket-close
signal only *enqueues* a job; :class:`DisconnectQueue` processes jobs in
FIFO order on a background task so the transport is never blocked on the
database.

Semantics of one job (:func:`handle_disconnect`):

* an absent/invalid ``user_id`` (or one with no ``users`` row) is logged
  and dropped — no mutations, no events, no exception to the caller;
* otherwise every *online* membership of the user is marked offline
  (account-wide; ``connection_id`` is only carried for correlation);
* exactly one ``websocket.disconnected`` notification is published, plus
  one ``user.status.changed`` per room actually flipped.

Jobs are at-least-once: a transient database failure is retried up to
``max_attempts`` times.  Re-running a job is harmless because going
offline is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from parley.database.engine import run_db
from parley.database.models import ChatRoomUser, User
from parley.engine import events, presence
from parley.engine.broadcast import BroadcastGateway
from parley.engine.membership import MembershipRecord, utcnow
from parley.errors import InvalidSignal

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 0.5  # seconds, multiplied by the attempt number


@dataclass(slots=True)
class DisconnectOutcome:
    """What one disconnect job did."""

    user_id: object
    connection_id: str | None
    rooms_offline: list[int] = field(default_factory=list)
    notified: bool = False
    dropped_reason: str | None = None

    @property
    def dropped(self) -> bool:
        return self.dropped_reason is not None


def _validate_user_id(user_id: object) -> int:
    if user_id is None:
        raise InvalidSignal("Disconnect signal has no user_id")
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise InvalidSignal(f"Disconnect signal has invalid user_id {user_id!r}")
    return user_id


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------
def handle_disconnect(
    engine: Engine,
    user_id: object,
    connection_id: str | None = None,
    *,
    gateway: BroadcastGateway | None = None,
    now: datetime | None = None,
) -> DisconnectOutcome:
    """Process one socket-close signal.  Never raises :class:`InvalidSignal`."""
    now = now or utcnow()
    outcome = DisconnectOutcome(user_id=user_id, connection_id=connection_id)
    flipped: list[MembershipRecord] = []

    try:
        uid = _validate_user_id(user_id)
        with Session(engine, expire_on_commit=False) as session:
            user = session.get(User, uid)
            if user is None:
                raise InvalidSignal(f"Disconnect signal for unknown user {uid}")
            name = user.name

            rows = session.scalars(
                select(ChatRoomUser)
                .where(ChatRoomUser.user_id == uid, ChatRoomUser.is_online.is_(True))
                .order_by(ChatRoomUser.room_id)
                .with_for_update()
            ).all()
            for row in rows:
                record = presence.mark_offline(MembershipRecord.from_row(row))
                record.apply_to(row)
                flipped.append(record)
            session.commit()
    except InvalidSignal as exc:
        logger.warning("Dropping disconnect signal (connection=%s): %s", connection_id, exc.detail)
        outcome.dropped_reason = exc.detail
        return outcome

    outcome.rooms_offline = [r.room_id for r in flipped]
    logger.info(
        "User %d disconnected (connection=%s) — offline in %d room(s)",
        uid, connection_id, len(flipped),
    )

    if gateway is not None:
        gateway.publish(*events.websocket_disconnected(uid, name, connection_id, now))
        for record in flipped:
            gateway.publish(*events.status_changed(record, name, now))
        outcome.notified = True
    return outcome


# ---------------------------------------------------------------------------
# Background queue
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DisconnectJob:
    user_id: object
    connection_id: str | None = None


class DisconnectQueue:
    """FIFO background queue for :func:`handle_disconnect` jobs.

    - :meth:`submit` is cheap and safe to call from the transport layer.
    - A single drain task runs jobs one at a time on a worker thread.
    - ``SQLAlchemyError`` is retried up to ``max_attempts``; anything else
      is logged and the job is discarded.
    """

    def __init__(
        self,
        engine: Engine,
        gateway: BroadcastGateway | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self.engine = engine
        self.gateway = gateway
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[DisconnectJob] = asyncio.Queue()
        self._drain_task: asyncio.Task | None = None

    def submit(self, user_id: object = None, connection_id: str | None = None) -> None:
        """Enqueue a disconnect job.  Must be called on the event loop thread."""
        self._queue.put_nowait(DisconnectJob(user_id=user_id, connection_id=connection_id))

    async def run_job(self, job: DisconnectJob) -> DisconnectOutcome | None:
        """Run *job* with retries.  Returns ``None`` if every attempt failed."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await run_db(
                    handle_disconnect,
                    self.engine,
                    job.user_id,
                    job.connection_id,
                    gateway=self.gateway,
                )
            except SQLAlchemyError:
                if attempt >= self.max_attempts:
                    logger.exception(
                        "Disconnect job for user %r failed after %d attempt(s)",
                        job.user_id, attempt,
                    )
                    return None
                logger.warning(
                    "Disconnect job for user %r failed (attempt %d/%d) — retrying",
                    job.user_id, attempt, self.max_attempts,
                )
                await asyncio.sleep(self.retry_delay * attempt)
            except Exception:
                logger.exception("Disconnect job for user %r crashed", job.user_id)
                return None
        return None

    async def drain_once(self) -> int:
        """Process every job currently queued.  Returns how many ran."""
        count = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                await self.run_job(job)
            finally:
                self._queue.task_done()
            count += 1
        return count

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start the background drain task."""
        if self._drain_task is not None:
            return

        async def _drain_loop() -> None:
            while True:
                job = await self._queue.get()
                try:
                    await self.run_job(job)
                except Exception:
                    logger.exception("Disconnect queue error")
                finally:
                    self._queue.task_done()

        self._drain_task = loop.create_task(_drain_loop(), name="disconnect-drain")
        logger.info("Disconnect queue started (max_attempts=%d)", self.max_attempts)

    def stop(self) -> None:
        """Cancel the drain task."""
        if self._drain_task:
            self._drain_task.cancel()
            self._drain_task = None
