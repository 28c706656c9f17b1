"""
parley.api.main — FastAPI application entry point
==================================================

Run with::

    uvicorn parley.api.main:app --reload --port 8000

The lifespan wires the realtime pieces once per process:

* a :class:`BroadcastGateway` bound to the running loop,
* the PG relay (PostgreSQL only, ``relay_enabled`` in config),
* the :class:`DisconnectQueue` drain task,
* the signal table entry ``socket.closed → DisconnectQueue.submit``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from parley.api.deps import get_config, get_engine  # noqa: E402
from parley.api.routes.admin import router as admin_router  # noqa: E402
from parley.api.routes.moderation import router as moderation_router  # noqa: E402
from parley.api.routes.realtime import router as realtime_router  # noqa: E402
from parley.api.routes.rooms import router as rooms_router  # noqa: E402
from parley.engine.broadcast import BroadcastGateway  # noqa: E402
from parley.engine.relay import PgEventRelay  # noqa: E402
from parley.engine.signals import SignalKind, SignalTable  # noqa: E402
from parley.errors import ParleyError  # noqa: E402
from parley.services.disconnect_service import DisconnectQueue  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — gateway, relay, disconnect queue."""
    loop = asyncio.get_running_loop()
    engine = get_engine()
    cfg = get_config()

    gateway = BroadcastGateway()
    gateway.bind(loop)

    relay = None
    if cfg.relay_enabled and engine.dialect.name == "postgresql":
        relay = PgEventRelay(engine, gateway)
        gateway.attach_relay(relay)
        relay.start_listener()

    queue = DisconnectQueue(engine, gateway, max_attempts=cfg.disconnect_max_attempts)
    queue.start(loop)

    signals = SignalTable()
    signals.register(SignalKind.SOCKET_CLOSED, queue.submit)

    app.state.gateway = gateway
    app.state.signals = signals
    app.state.disconnect_queue = queue

    logger.info(
        "Parley API started — %s (relay=%s)", cfg.service_name, "on" if relay else "off",
    )
    yield

    queue.stop()
    if relay is not None:
        relay.stop_listener()
    logger.info("Parley API shutting down")


app = FastAPI(
    title="Parley Chat API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ParleyError)
async def parley_error_handler(request: Request, exc: ParleyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Mount routers
app.include_router(rooms_router, prefix="/api")
app.include_router(moderation_router, prefix="/api")
app.include_router(realtime_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
