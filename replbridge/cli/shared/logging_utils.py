"""Loguru file sink shared by every replbridge CLI process."""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

LOG_DIR_ENV = "REPLBRIDGE_LOG_DIR"
# Several CLI processes append to the same file, so each line carries its pid.
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {process} | {level: <8} | {name}:{function}:{line} - {message}"

_SINK_IDS: dict[str, int] = {}


def get_log_dir() -> Path:
    override = os.environ.get(LOG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".replbridge" / "logs"


def ensure_rotating_log_file(name: str, level: str = "INFO") -> Path:
    """
    Attach (or re-attach at a new level) the rotating sink for `name`.

    The CLI calls logger.remove() before configuring sinks, which also drops
    this sink, so a remembered id is discarded and the sink added again.
    """
    log_path = get_log_dir() / f"{name}.log"
    previous = _SINK_IDS.pop(name, None)
    if previous is not None:
        try:
            logger.remove(previous)
        except ValueError:
            pass  # already removed with the other handlers
    log_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    _SINK_IDS[name] = logger.add(
        str(log_path),
        level=level,
        format=FILE_FORMAT,
        rotation="10 MB",
        retention="14 days",
        enqueue=True,
        encoding="utf-8",
        backtrace=False,
        diagnose=False,
    )
    return log_path


def remove_log_file_sink(name: str) -> None:
    sink_id = _SINK_IDS.pop(name, None)
    if sink_id is None:
        return
    try:
        logger.remove(sink_id)
    except ValueError:
        pass
