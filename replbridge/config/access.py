"""Cached configuration access facade."""

from __future__ import annotations

import os
import threading
from pathlib import Path

from loguru import logger

from replbridge.config.loader import get_config_path, load_config
from replbridge.config.schema import Config

ENV_PREFIX = "REPLBRIDGE_"

_CacheKey = tuple[str, tuple[tuple[str, str], ...]]

_lock = threading.RLock()
_cache: dict[_CacheKey, Config] = {}


def _resolved(config_path: Path | None) -> str:
    return str(Path(config_path or get_config_path()).expanduser().resolve())


def _env_overrides() -> tuple[tuple[str, str], ...]:
    return tuple(sorted((k, v) for k, v in os.environ.items() if k.upper().startswith(ENV_PREFIX)))


def get_config(*, config_path: Path | None = None, force_reload: bool = False) -> Config:
    """
    Get config with a process-local cache.

    Entries are keyed by the resolved file path and the current REPLBRIDGE_*
    environment, so an override exported after the first load takes effect
    on the next call.
    """
    path = _resolved(config_path)
    key = (path, _env_overrides())
    with _lock:
        if force_reload or key not in _cache:
            for stale in [k for k in _cache if k[0] == path]:
                del _cache[stale]
            logger.debug(f"Loading config from {path}")
            _cache[key] = load_config(Path(path))
        return _cache[key]


def clear_config_cache(*, config_path: Path | None = None) -> None:
    """Clear cached entries for one config file (or all of them)."""
    with _lock:
        if config_path is None:
            _cache.clear()
            return
        path = _resolved(config_path)
        for key in [k for k in _cache if k[0] == path]:
            del _cache[key]
