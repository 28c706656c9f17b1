"""
parley.worker.tasks — Periodic Background Tasks
================================================

Scheduled jobs that run as ``asyncio`` loops in the worker process:

- **Presence sweep** — every ``sweep_interval_seconds`` (default 60),
  flips members whose last heartbeat is older than
  ``presence_timeout_seconds`` (default 300) offline.
- **Moderation reconciliation** — every ``reconcile_interval_seconds``
  (default 3600), clears mute/ban flags whose expiry has passed.

Both run via ``run_db()`` to avoid blocking the event loop.  A failing
iteration is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from sqlalchemy import Engine

from parley.config import ParleyConfig
from parley.database.engine import run_db
from parley.engine.broadcast import BroadcastGateway
from parley.services import moderation_service, presence_service

logger = logging.getLogger(__name__)


class PeriodicTasks:
    """Owns the worker's background loops."""

    def __init__(
        self,
        cfg: ParleyConfig,
        engine: Engine,
        gateway: BroadcastGateway | None = None,
    ) -> None:
        self.cfg = cfg
        self.engine = engine
        self.gateway = gateway
        self._tasks: list[asyncio.Task] = []

    # -------------------------------------------------------------------
    # Single iterations
    # -------------------------------------------------------------------
    async def sweep_once(self) -> int:
        """Run one presence sweep.  Returns how many members went offline."""
        try:
            changed = await run_db(
                presence_service.sweep_stale,
                self.engine,
                timedelta(seconds=self.cfg.presence_timeout_seconds),
                gateway=self.gateway,
            )
        except Exception:
            logger.exception("Presence sweep failed", extra={"task": "presence_sweep"})
            return 0
        return len(changed)

    async def reconcile_once(self) -> int:
        """Run one moderation reconciliation.  Returns flags cleared."""
        try:
            return await run_db(
                moderation_service.reconcile_expired, self.engine, gateway=self.gateway,
            )
        except Exception:
            logger.exception("Moderation reconciliation failed", extra={"task": "reconcile"})
            return 0

    # -------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------
    async def _every(self, seconds: int, job, name: str) -> None:
        logger.info("Task '%s' scheduled every %ds", name, seconds)
        while True:
            await job()
            await asyncio.sleep(seconds)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start both loops on *loop*."""
        if self._tasks:
            return
        self._tasks = [
            loop.create_task(
                self._every(self.cfg.sweep_interval_seconds, self.sweep_once, "presence-sweep"),
                name="presence-sweep",
            ),
            loop.create_task(
                self._every(
                    self.cfg.reconcile_interval_seconds, self.reconcile_once, "moderation-reconcile",
                ),
                name="moderation-reconcile",
            ),
        ]

    def stop(self) -> None:
        """Cancel all loops."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    async def wait(self) -> None:
        """Block until the loops end (i.e. are cancelled)."""
        await asyncio.gather(*self._tasks, return_exceptions=True)
