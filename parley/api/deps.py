"""
parley.api.deps — FastAPI dependency injection
===============================================

Tokens are issued by the identity provider; this service only verifies
them.  Claims used: ``sub`` (user id), ``name``, ``is_admin``.

``JWT_SECRET`` is checked when this module is imported, so a misconfigured
deployment fails at startup instead of on the first request.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from parley.config import ParleyConfig, load_config
from parley.database.engine import create_db_engine
from parley.engine.broadcast import BroadcastGateway
from parley.engine.signals import SignalTable

JWT_ALGORITHM = "HS256"

# Placeholders that ship in examples and must never reach production
_WEAK_SECRETS = frozenset({
    "parley-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "replace-with-output-of-secrets-token-urlsafe-64",
})

_MIN_SECRET_LENGTH = 32


def _load_jwt_secret() -> str:
    """Return ``JWT_SECRET`` or raise :class:`RuntimeError` if it is unusable.

    Rejected: unset or blank, one of the placeholder values, or shorter
    than 32 characters.
    """
    secret = os.getenv("JWT_SECRET", "").strip()
    if not secret:
        raise RuntimeError(
            "JWT_SECRET is not set; the API cannot verify tokens without it. "
            "It must match the secret the identity provider signs with."
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is a placeholder value ('{secret}'); configure the real signing secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short: {len(secret)} characters, "
            f"at least {_MIN_SECRET_LENGTH} required."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ParleyConfig:
    return load_config()


# ---------------------------------------------------------------------------
# Realtime plumbing (created by the app lifespan)
# ---------------------------------------------------------------------------
def get_gateway(request: Request) -> BroadcastGateway | None:
    return getattr(request.app.state, "gateway", None)


def get_signals(request: Request) -> SignalTable | None:
    return getattr(request.app.state, "signals", None)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def decode_token(token: str) -> dict:
    """Decode and validate a bearer token.  Raises 401 if invalid."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    try:
        payload["user_id"] = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token subject")
    return payload


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return the payload (with ``user_id``). Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    return decode_token(authorization.split(" ", 1)[1])


def get_current_user_id(user: Annotated[dict, Depends(get_current_user)]) -> int:
    return user["user_id"]


def get_current_admin(user: Annotated[dict, Depends(get_current_user)]) -> dict:
    """Like :func:`get_current_user` but raises 403 for non-admins."""
    if not user.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return user
