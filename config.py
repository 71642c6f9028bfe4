"""
config — YAML configuration loader
==================================

Reads ``config.yaml`` for the server's infrastructure settings: where to
listen, how long the HTTP layer waits for a response, and the safety limits
the sync engine applies to each burst.

Usage::

    from config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.base_url)          # "/api"
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Tuple

import yaml


@dataclass(frozen=True)
class ServerConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every key is optional; anything left out keeps the default below.
    """

    # HTTP
    host: str = "0.0.0.0"
    port: int = 8000
    base_url: str = "/api"
    request_timeout: float = 10.0  # seconds to wait for Requesting.respond

    # Engine limits (per burst)
    max_burst_depth: int = 32
    max_burst_actions: int = 512
    flow_retention: int = 1024  # completed bursts kept in the action log

    # Routes that call a concept directly instead of going through Requesting
    passthrough: Tuple[str, ...] = field(default_factory=tuple)

    log_level: str = "INFO"


_CASTS = {"port": int, "request_timeout": float, "max_burst_depth": int,
          "max_burst_actions": int, "flow_retention": int}


def load_config(path: str | Path = "config.yaml") -> ServerConfig:
    """Read *path* and return a :class:`ServerConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If the file holds something other than a mapping, or names a key
        this server doesn't know.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml from the repository root and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path} must contain a mapping, got {type(raw).__name__}")

    known = {f.name for f in fields(ServerConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown configuration keys in {config_path}: {', '.join(unknown)}")

    values = {}
    for key, value in raw.items():
        if value is None:
            continue
        if key in _CASTS:
            value = _CASTS[key](value)
        elif key == "passthrough":
            value = tuple(value)
        elif key == "log_level":
            value = str(value).upper()
        values[key] = value
    return ServerConfig(**values)
