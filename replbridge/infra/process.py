"""Cross-platform process primitives: liveness, start-time fingerprints, group signals."""

from __future__ import annotations

import os
import signal
import stat
import subprocess
import sys
from pathlib import Path

import psutil
from loguru import logger

# Fingerprints are rounded so a value read back from JSON compares equal.
_START_TIME_PRECISION = 2


def is_valid_pid(pid: object) -> bool:
    """A pid from an untrusted file must be a positive int (bool excluded)."""
    return isinstance(pid, int) and not isinstance(pid, bool) and pid > 0


def is_process_alive(pid: int) -> bool:
    """True when the pid exists and is not a zombie."""
    if not is_valid_pid(pid):
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but owned by someone else.
        return True


def get_process_start_time(pid: int) -> float | None:
    """Opaque start-time fingerprint for PID-reuse detection, or None if unavailable."""
    if not is_valid_pid(pid):
        return None
    try:
        return round(psutil.Process(pid).create_time(), _START_TIME_PRECISION)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
    except OSError as e:
        logger.debug(f"start time lookup failed for pid {pid}: {e}")
        return None


def verify_process(pid: int, recorded_start_time: float | None) -> bool:
    """
    Verify that pid is alive and is the same process that was recorded.

    Fails closed: when a start time was recorded but the current one cannot be
    read, the process is treated as a different one.
    """
    if not is_process_alive(pid):
        return False
    if recorded_start_time is None:
        return True
    current = get_process_start_time(pid)
    if current is None:
        return False
    return round(float(recorded_start_time), _START_TIME_PRECISION) == current


def kill_process_group(pid: int, sig: signal.Signals) -> bool:
    """
    Send a signal to the process group led by pid (falls back to the pid itself).

    Windows has no process groups in this sense; taskkill /T walks the tree.
    """
    if not is_valid_pid(pid):
        return False
    if sys.platform == "win32":
        args = ["taskkill", "/T", "/PID", str(pid)]
        if sig == getattr(signal, "SIGKILL", None):
            args.insert(1, "/F")
        try:
            subprocess.run(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=5, check=True)
            return True
        except (subprocess.SubprocessError, OSError):
            return False
    try:
        os.killpg(pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        try:
            os.kill(pid, sig)
            return True
        except (ProcessLookupError, PermissionError):
            return False


def is_socket(path: Path) -> bool:
    """True when path exists and is a Unix-domain socket (symlinks are not followed)."""
    try:
        return stat.S_ISSOCK(os.lstat(path).st_mode)
    except OSError:
        return False
