"""
Session Lock - file-based single-writer lock per session.

Provides:
- Exclusive-create lock files (O_EXCL) shared by unrelated processes
- PID-reuse safety via process start time verification
- Stale lock detection and safe breaking (longer threshold for other hosts)
- Symlink rejection on every open/read
"""

from __future__ import annotations

import errno
import json
import os
import socket
import stat
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, field_validator

from replbridge.config.schema import LockConfig
from replbridge.infra.process import get_process_start_time, verify_process
from replbridge.session.paths import SessionPaths
from replbridge.utils.exceptions import LockError, LockTimeoutError
from replbridge.utils.helpers import age_seconds, ensure_dir, parse_iso, utc_now_iso

AcquireReason = Literal["success", "stale_broken", "held_by_other", "error"]

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)


class LockRecord(BaseModel):
    """Current holder of a session lock, as stored in the lock file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lock_id: str = Field(alias="lockId", min_length=1)
    pid: StrictInt = Field(gt=0)
    process_start_time: StrictInt | StrictFloat | None = Field(default=None, alias="processStartTime")
    hostname: str = Field(min_length=1)
    acquired_at: str = Field(alias="acquiredAt", min_length=1)

    @field_validator("acquired_at")
    @classmethod
    def _acquired_at_is_iso(cls, value: str) -> str:
        if parse_iso(value) is None:
            raise ValueError("acquiredAt must be an ISO-8601 timestamp")
        return value

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), indent=2)


@dataclass(slots=True)
class LockAttempt:
    """Outcome of one non-blocking acquisition attempt."""

    acquired: bool
    reason: AcquireReason
    holder: LockRecord | None = None


@dataclass(slots=True)
class LockStatus:
    """Snapshot of a session lock for diagnostics."""

    locked: bool
    lock_info: LockRecord | None
    can_break: bool
    owned_by_us: bool


def _is_symlink(path: Path) -> bool:
    try:
        return stat.S_ISLNK(os.lstat(path).st_mode)
    except OSError:
        return False


def _read_no_follow(path: Path) -> str:
    """Read a file, refusing symlinks. FileNotFoundError propagates."""
    fd = os.open(path, os.O_RDONLY | _O_NOFOLLOW)
    with os.fdopen(fd, "r", encoding="utf-8") as f:
        return f.read()


def read_lock_file(lock_path: Path) -> LockRecord | None:
    """Read and validate a lock file. None when missing, symlinked, unparseable or incomplete."""
    if _is_symlink(lock_path):
        return None
    try:
        raw = _read_no_follow(lock_path)
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.debug(f"Cannot read lock file {lock_path}: {e}")
        return None
    try:
        return LockRecord.model_validate_json(raw)
    except ValueError:
        return None


def create_lock_info(lock_id: str) -> LockRecord:
    """Lock record describing the current process."""
    return LockRecord(
        lock_id=lock_id,
        pid=os.getpid(),
        process_start_time=get_process_start_time(os.getpid()),
        hostname=socket.gethostname(),
        acquired_at=utc_now_iso(),
    )


def can_break_lock(info: LockRecord, settings: LockConfig) -> bool:
    """
    A lock is breakable only when it is old enough AND its holder is gone.

    - Younger than stale_age: never breakable.
    - Other host: breakable after remote_stale_age (liveness cannot be checked).
    - Same host: breakable when the holder pid is dead or was reused.
    """
    age = age_seconds(info.acquired_at)
    if age is None or age < settings.stale_age:
        return False
    if info.hostname != socket.gethostname():
        return age > settings.remote_stale_age
    return not verify_process(info.pid, info.process_start_time)


class SessionLock:
    """
    Manages a single lock file for session coordination.

    Example:
        lock = SessionLock("my-session")
        lock.acquire()
        try:
            ...
        finally:
            lock.release()
    """

    def __init__(
        self,
        session_id: str,
        *,
        paths: SessionPaths | None = None,
        settings: LockConfig | None = None,
    ):
        if settings is None:
            from replbridge.config.access import get_config

            settings = get_config().lock
        self.session_id = session_id
        self.settings = settings
        self.lock_path = (paths or SessionPaths.default()).lock_path(session_id)
        self.lock_id = str(uuid.uuid4())
        self._held = False
        self._lock_info: LockRecord | None = None

    def acquire(self, timeout: float | None = None) -> None:
        """
        Block until the lock is acquired or timeout seconds elapse.

        Raises:
            LockError: this instance already holds the lock.
            LockTimeoutError: not acquired in time; carries the last known holder.
        """
        if self._held:
            raise LockError("Lock already held by this instance", lock_path=str(self.lock_path))
        timeout = self.settings.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        last_holder: LockRecord | None = None
        while True:
            result = self.try_acquire()
            if result.acquired:
                return
            if result.holder is not None:
                last_holder = result.holder
            if time.monotonic() + self.settings.retry_interval > deadline:
                break
            time.sleep(self.settings.retry_interval)
        raise LockTimeoutError(str(self.lock_path), timeout, last_holder)

    def try_acquire(self) -> LockAttempt:
        """Single non-blocking attempt."""
        try:
            existing = self._inspect_existing()
            if existing is not None:
                if not can_break_lock(existing, self.settings):
                    return LockAttempt(acquired=False, reason="held_by_other", holder=existing)
                logger.warning(
                    f"Breaking stale lock {self.lock_path} (pid {existing.pid} on {existing.hostname} "
                    f"since {existing.acquired_at})"
                )
                self._break_stale(existing.lock_id)

            info = create_lock_info(self.lock_id)
            ensure_dir(self.lock_path.parent)
            try:
                fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | _O_NOFOLLOW, 0o600)
            except FileExistsError:
                return LockAttempt(acquired=False, reason="held_by_other")
            except OSError as e:
                if e.errno == errno.ELOOP:
                    raise LockError(f"Lock file is a symlink: {self.lock_path}", lock_path=str(self.lock_path)) from e
                raise
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(info.to_json())
                f.flush()
                os.fsync(f.fileno())

            # Two near-simultaneous stale breakers can each think they won.
            if not self._confirm_owner():
                return LockAttempt(acquired=False, reason="error")

            self._held = True
            self._lock_info = info
            return LockAttempt(acquired=True, reason="stale_broken" if existing is not None else "success")
        except (OSError, LockError) as e:
            logger.debug(f"Lock attempt on {self.lock_path} failed: {e}")
            return LockAttempt(acquired=False, reason="error")

    def release(self) -> None:
        """Release the lock. Idempotent; never deletes a lock owned by someone else."""
        if not self._held:
            return
        try:
            current = read_lock_file(self.lock_path)
            if current is not None and current.lock_id == self.lock_id:
                self.lock_path.unlink(missing_ok=True)
            else:
                logger.warning(f"Lock {self.lock_path} no longer ours at release; leaving it in place")
        except OSError as e:
            logger.debug(f"Lock release on {self.lock_path} failed: {e}")
        finally:
            self._held = False
            self._lock_info = None

    def force_break(self) -> None:
        """Delete the lock file regardless of holder. Recovery only."""
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        self._held = False
        self._lock_info = None

    def is_held(self) -> bool:
        return self._held

    @property
    def lock_info(self) -> LockRecord | None:
        return self._lock_info

    def _confirm_owner(self) -> bool:
        """Re-read the lock file after creating it. A peer checking staleness may hold it aside briefly."""
        for _ in range(3):
            current = read_lock_file(self.lock_path)
            if current is not None:
                return current.lock_id == self.lock_id
            time.sleep(self.settings.retry_interval)
        return False

    def _inspect_existing(self) -> LockRecord | None:
        """
        Return the current valid holder, if any.

        Symlinks at the lock path are removed. Unparseable lock files are
        removed once their mtime is older than stale_age; younger ones may
        still be mid-write by their creator. Both removals go through
        _discard_if, so a fresh lock created in the meantime survives.
        """
        if _is_symlink(self.lock_path):
            logger.warning(f"Removing symlink planted at lock path {self.lock_path}")
            self._discard_if(_is_symlink)
            return None
        record = read_lock_file(self.lock_path)
        if record is not None:
            return record
        try:
            judged = os.lstat(self.lock_path)
        except FileNotFoundError:
            return None
        if time.time() - judged.st_mtime < self.settings.stale_age:
            return None

        def still_corrupt(moved: Path) -> bool:
            st = os.lstat(moved)
            if (st.st_ino, st.st_mtime_ns) != (judged.st_ino, judged.st_mtime_ns):
                return False
            return not stat.S_ISLNK(st.st_mode) and read_lock_file(moved) is None

        logger.warning(f"Removing unreadable stale lock file {self.lock_path}")
        self._discard_if(still_corrupt)
        return None

    def _break_stale(self, stale_lock_id: str) -> bool:
        """Remove the stale record identified by stale_lock_id, leaving any newer lock in place."""

        def still_stale(moved: Path) -> bool:
            record = read_lock_file(moved)
            return record is not None and record.lock_id == stale_lock_id

        return self._discard_if(still_stale)

    def _discard_if(self, still_stale: Callable[[Path], bool]) -> bool:
        """
        Rename the lock file aside, then delete it only if still_stale holds
        for the moved file; otherwise link it back into place. A lock created
        after the caller judged the old one is never deleted.

        Returns True when the file was discarded.
        """
        aside = self.lock_path.with_name(f"{self.lock_path.name}.{self.lock_id}.stale")
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return False
        try:
            if still_stale(aside):
                return True
            logger.debug(f"Lock {self.lock_path} changed since it was judged stale; restoring it")
            try:
                os.link(aside, self.lock_path, follow_symlinks=False)
            except FileExistsError:
                logger.warning(f"Lock {self.lock_path} was recreated while restoring a newer lock")
            return False
        finally:
            aside.unlink(missing_ok=True)


@contextmanager
def with_lock(
    session_id: str,
    timeout: float | None = None,
    *,
    paths: SessionPaths | None = None,
    settings: LockConfig | None = None,
) -> Iterator[SessionLock]:
    """Hold the session lock for the duration of the block."""
    lock = SessionLock(session_id, paths=paths, settings=settings)
    lock.acquire(timeout)
    try:
        yield lock
    finally:
        lock.release()


def get_lock_status(
    session_id: str,
    *,
    paths: SessionPaths | None = None,
    settings: LockConfig | None = None,
) -> LockStatus:
    """Report who holds the session lock and whether it could be broken."""
    if settings is None:
        from replbridge.config.access import get_config

        settings = get_config().lock
    lock_path = (paths or SessionPaths.default()).lock_path(session_id)
    info = read_lock_file(lock_path)
    if info is None:
        return LockStatus(locked=False, lock_info=None, can_break=False, owned_by_us=False)
    return LockStatus(
        locked=True,
        lock_info=info,
        can_break=can_break_lock(info, settings),
        owned_by_us=info.pid == os.getpid() and info.hostname == socket.gethostname(),
    )
