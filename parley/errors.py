"""
parley.errors — Service-level exception taxonomy
=================================================

Services raise these; the API turns any :class:`ParleyError` into a JSON
response carrying ``status_code``.  :class:`InvalidSignal` never leaves the
disconnect handler — it is logged and the signal is dropped.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for errors that surface to a client."""

    status_code: int = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFound(ParleyError):
    """No membership (or room/user) for the requested identity."""

    status_code = 404


class Forbidden(ParleyError):
    """Caller lacks the capability, or the member may not post."""

    status_code = 403


class InvalidAction(ParleyError):
    """Well-formed request that the rules reject (e.g. self-moderation)."""

    status_code = 422


class InvalidSignal(ParleyError):
    """Disconnect signal without an identifiable user."""

    status_code = 400
