"""
parley.worker.__main__ — Entry point for ``python -m parley.worker``
====================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Build a BroadcastGateway; on PostgreSQL attach the NOTIFY relay so
   events from the sweeps reach subscribers connected to the API.
5. Start the periodic tasks and run until interrupted.

Run with::

    python -m parley.worker
"""

from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv

from parley.config import load_config
from parley.database.engine import create_db_engine, init_db
from parley.engine.broadcast import BroadcastGateway
from parley.engine.relay import PgEventRelay
from parley.worker.tasks import PeriodicTasks

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("parley")


async def _run() -> None:
    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — service: %s", cfg.service_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Outgoing broadcasts (the worker has no local subscribers).
    gateway = BroadcastGateway()
    gateway.bind(asyncio.get_running_loop())
    if cfg.relay_enabled and engine.dialect.name == "postgresql":
        gateway.attach_relay(PgEventRelay(engine, gateway))

    # 5. Periodic tasks.
    tasks = PeriodicTasks(cfg, engine, gateway)
    tasks.start(asyncio.get_running_loop())
    try:
        await tasks.wait()
    finally:
        tasks.stop()


def main() -> None:
    """Bootstrap and run the Parley worker."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
