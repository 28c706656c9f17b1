"""
parley.api.routes.realtime — WebSocket fan-out & disconnect signal
===================================================================

``WS /api/ws?token=…`` speaks a tiny JSON protocol:

    → {"action": "subscribe",   "channel": "chat.room.7"}
    → {"action": "unsubscribe", "channel": "chat.room.7"}
    → {"action": "heartbeat",   "room_id": 7}
    ← {"channel": "...", "event": "...", "data": {...}}

Room channels require a membership in that room.  When the socket closes,
a ``socket.closed`` signal is dispatched with the user id and a per-socket
connection id.

``POST /api/realtime/disconnect`` lets an external transport (a separate
socket server) deliver the same signal.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from parley.api.deps import decode_token, get_current_admin, get_engine, get_signals
from parley.constants import ROOM_CHANNEL_PREFIX
from parley.database.engine import run_db
from parley.engine.broadcast import BroadcastGateway, Subscription
from parley.engine.signals import SignalKind
from parley.errors import ParleyError
from parley.services import membership_service, presence_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# Application close code for a rejected token
WS_CLOSE_UNAUTHORIZED = 4401


class DisconnectSignal(BaseModel):
    user_id: int | None = None
    connection_id: str | None = None


# ---------------------------------------------------------------------------
# Transport-level disconnect signal
# ---------------------------------------------------------------------------
@router.post("/realtime/disconnect", status_code=status.HTTP_202_ACCEPTED)
async def disconnect_signal(
    body: DisconnectSignal,
    admin: dict = Depends(get_current_admin),
    signals=Depends(get_signals),
):
    """Queue a disconnect job.  Invalid user ids are accepted and dropped later."""
    if signals is None or not signals.is_registered(SignalKind.SOCKET_CLOSED):
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Realtime not initialised")
    signals.dispatch(
        SignalKind.SOCKET_CLOSED, user_id=body.user_id, connection_id=body.connection_id,
    )
    return {"status": "queued"}


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------
def _room_id(channel: str) -> int | None:
    if not channel.startswith(ROOM_CHANNEL_PREFIX):
        return None
    try:
        return int(channel[len(ROOM_CHANNEL_PREFIX):])
    except ValueError:
        return None


async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    """Forward envelopes from *sub* to the socket until cancelled."""
    while True:
        envelope = await sub.queue.get()
        await websocket.send_json(envelope)


class _Connection:
    """Per-socket subscription bookkeeping."""

    def __init__(self, websocket: WebSocket, gateway: BroadcastGateway) -> None:
        self.websocket = websocket
        self.gateway = gateway
        self.subs: dict[str, tuple[Subscription, asyncio.Task]] = {}

    def subscribe(self, channel: str) -> None:
        if channel in self.subs:
            return
        sub = self.gateway.subscribe(channel)
        task = asyncio.create_task(_pump(self.websocket, sub), name=f"ws-pump-{sub.id}")
        self.subs[channel] = (sub, task)

    def unsubscribe(self, channel: str) -> None:
        entry = self.subs.pop(channel, None)
        if entry is None:
            return
        sub, task = entry
        task.cancel()
        self.gateway.unsubscribe(sub)

    def close(self) -> None:
        for channel in list(self.subs):
            self.unsubscribe(channel)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(default=""),
    engine=Depends(get_engine),
):
    try:
        user_id = decode_token(token)["user_id"]
    except HTTPException:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    gateway: BroadcastGateway | None = getattr(websocket.app.state, "gateway", None)
    if gateway is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    conn = _Connection(websocket, gateway)
    await websocket.send_json({"event": "connected", "data": {"connection_id": connection_id}})
    logger.info("WebSocket %s opened for user %d", connection_id, user_id)

    try:
        while True:
            try:
                msg = await websocket.receive_json()
            except (KeyError, ValueError):
                # KeyError: a binary frame has no "text" key
                await websocket.send_json({"event": "error", "data": {"detail": "Invalid JSON"}})
                continue
            action = msg.get("action") if isinstance(msg, dict) else None

            if action == "subscribe":
                channel = str(msg.get("channel", ""))
                room_id = _room_id(channel)
                if room_id is not None:
                    member = await run_db(
                        membership_service.get_membership, engine, room_id, user_id,
                    )
                    if member is None:
                        await websocket.send_json({
                            "event": "error",
                            "data": {"detail": f"Not a member of room {room_id}"},
                        })
                        continue
                conn.subscribe(channel)
                await websocket.send_json({"event": "subscribed", "data": {"channel": channel}})

            elif action == "unsubscribe":
                channel = str(msg.get("channel", ""))
                conn.unsubscribe(channel)
                await websocket.send_json({"event": "unsubscribed", "data": {"channel": channel}})

            elif action == "heartbeat":
                try:
                    await run_db(
                        presence_service.heartbeat,
                        engine, int(msg.get("room_id")), user_id,
                        gateway=gateway,
                    )
                except (ParleyError, TypeError, ValueError) as exc:
                    logger.debug("Ignored heartbeat from user %d: %s", user_id, exc)

            else:
                logger.debug("Unknown WebSocket action from user %d: %r", user_id, action)

    except WebSocketDisconnect:
        pass
    finally:
        conn.close()
        logger.info("WebSocket %s closed for user %d", connection_id, user_id)
        signals = getattr(websocket.app.state, "signals", None)
        if signals is not None:
            signals.dispatch(
                SignalKind.SOCKET_CLOSED, user_id=user_id, connection_id=connection_id,
            )
