"""
parley.services.knowledge_service — Knowledge index rebuild trigger
====================================================================

The full-text index itself is built by an external service.  This module
asks it to rebuild (``POST {"force": true}``) and, on success, announces
``knowledge.index.updated`` so open clients can refresh.

Only one build is in flight per process; a trigger that arrives while one
is running is skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime

import httpx

from parley.database.engine import run_db
from parley.engine import events
from parley.engine.broadcast import BroadcastGateway
from parley.engine.membership import utcnow

logger = logging.getLogger(__name__)

BUILD_TIMEOUT_SECONDS = 300

# Only touched on the event loop; no await between the check and the set.
_building = False


def build_in_progress() -> bool:
    return _building


async def trigger_index_build(
    url: str | None,
    gateway: BroadcastGateway | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = BUILD_TIMEOUT_SECONDS,
    now: datetime | None = None,
) -> bool:
    """Ask the index service to rebuild.  Returns True on a 2xx response.

    Parameters
    ----------
    url:
        Build endpoint.  ``None``/empty → warning, nothing is sent.
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).

    Raises
    ------
    httpx.HTTPError
        Transport-level failures (timeout, connection refused) are logged
        and re-raised so the caller can decide whether to retry.
    """
    if not url:
        logger.warning("Knowledge index build URL is not configured — skipping rebuild")
        return False

    global _building
    if _building:
        logger.info("Knowledge index build already in progress — skipping")
        return False

    _building = True
    try:
        if transport is None:
            transport = httpx.AsyncHTTPTransport(retries=1)
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            try:
                resp = await client.post(url, json={"force": True})
            except httpx.HTTPError:
                logger.exception("Knowledge index build request to %s failed", url)
                raise
    finally:
        _building = False

    if not resp.is_success:
        logger.warning(
            "Knowledge index build returned HTTP %d: %s", resp.status_code, resp.text[:200],
        )
        return False

    updated_at = now or utcnow()
    logger.info("Knowledge index rebuilt at %s", updated_at.isoformat())
    if gateway is not None:
        # Publishing may NOTIFY through the database; keep it off the loop.
        await run_db(gateway.publish, *events.knowledge_index_updated(updated_at))
    return True
