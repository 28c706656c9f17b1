"""
parley.engine.signals — Explicit signal → handler table
========================================================

Transport code (the WebSocket endpoint, the ``/realtime/disconnect``
route) does not know who reacts to a socket closing.  It dispatches a
:class:`SignalKind` with a payload; handlers are registered once at
process start by the API lifespan.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class SignalKind(enum.StrEnum):
    SOCKET_CLOSED = "socket.closed"


class SignalTable:
    """Function table keyed by :class:`SignalKind`.  One handler per kind."""

    def __init__(self) -> None:
        self._handlers: dict[SignalKind, Handler] = {}

    def register(self, kind: SignalKind, handler: Handler) -> None:
        if kind in self._handlers:
            logger.warning("Replacing handler for signal '%s'", kind)
        self._handlers[kind] = handler
        logger.info("Registered handler for signal '%s'", kind)

    def is_registered(self, kind: SignalKind) -> bool:
        return kind in self._handlers

    def dispatch(self, kind: SignalKind, **payload: Any) -> Any:
        """Call the handler for *kind* with *payload*.

        Returns the handler's result, or ``None`` if nothing is registered.
        """
        handler = self._handlers.get(kind)
        if handler is None:
            logger.warning("No handler registered for signal '%s' — dropped", kind)
            return None
        return handler(**payload)
