"""
parley.config — YAML Configuration Loader
==========================================

**Why this file exists:**
Secrets (``DATABASE_URL``, ``JWT_SECRET``) come from the environment.
Everything else that an operator may want to tune — presence timeout,
sweep cadence, retry budget for the disconnect queue, the knowledge index
build URL — lives in ``config.yaml``.

Usage::

    from parley.config import load_config

    cfg = load_config()                   # reads ./config.yaml by default
    print(cfg.presence_timeout_seconds)   # 300
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ParleyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str

    # Presence
    presence_timeout_seconds: int = 300   # heartbeat older than this → stale
    sweep_interval_seconds: int = 60      # how often the worker sweeps

    # Moderation
    reconcile_interval_seconds: int = 3600

    # Disconnect queue
    disconnect_max_attempts: int = 3

    # Realtime
    relay_enabled: bool = True  # cross-process fan-out via PG NOTIFY

    # Optional
    knowledge_build_url: str | None = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def default_config_path() -> Path:
    """Return the config path from ``PARLEY_CONFIG`` or ``./config.yaml``."""
    return Path(os.getenv("PARLEY_CONFIG", "config.yaml"))


def load_config(path: str | Path | None = None) -> ParleyConfig:
    """Read *path* and return a :class:`ParleyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to :func:`default_config_path`.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return ParleyConfig(
        service_name=raw["service_name"],
        presence_timeout_seconds=int(raw.get("presence_timeout_seconds", 300)),
        sweep_interval_seconds=int(raw.get("sweep_interval_seconds", 60)),
        reconcile_interval_seconds=int(raw.get("reconcile_interval_seconds", 3600)),
        disconnect_max_attempts=int(raw.get("disconnect_max_attempts", 3)),
        relay_enabled=bool(raw.get("relay_enabled", True)),
        knowledge_build_url=raw.get("knowledge_build_url") or None,
    )
