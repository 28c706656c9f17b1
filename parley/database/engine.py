"""
parley.database.engine — Engine factory & thread offload
=========================================================

**Why this file exists:**
Services are synchronous SQLAlchemy code; the API and the worker are
``asyncio`` programs holding open WebSockets.  :func:`run_db` ships a
service call to a worker thread so a slow row lock never stalls the loop.

Usage::

    from parley.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()     # DATABASE_URL from the environment
    init_db(engine)

    record = await run_db(presence_service.heartbeat, engine, room_id, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url

from parley.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Heartbeats are short single-row updates; size the pool for many of them.
_PG_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_pre_ping": True,
    "pool_timeout": 10,
    "pool_recycle": 3600,
}


def create_db_engine(url: str | None = None) -> Engine:
    """Build the process-wide :class:`Engine`.

    *url* defaults to ``DATABASE_URL``.  PostgreSQL gets a sized connection
    pool; SQLite (local experiments only, no row locks, no relay) gets the
    driver defaults plus ``check_same_thread=False`` for :func:`run_db`.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and point it at the Parley database."
        )

    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        engine = create_engine(url, connect_args={"check_same_thread": False})
        logger.warning("Using SQLite — row locks and cross-process broadcast are unavailable")
    else:
        engine = create_engine(url, **_PG_POOL_OPTIONS)
    logger.info("Database engine ready (%s → %s)", backend, engine.url.host or engine.url.database)
    return engine


def init_db(engine: Engine) -> None:
    """``create_all`` for every Parley table.

    Alembic owns the schema in deployed environments; this only fills in
    missing tables for a fresh dev database.
    """
    Base.metadata.create_all(engine)
    logger.info("Parley tables present")


async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await *func* (a sync service call) on the default thread pool."""
    return await asyncio.to_thread(func, *args, **kwargs)
