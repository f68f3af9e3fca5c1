import json
import os
import socket
import subprocess
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from replbridge.infra.process import get_process_start_time
from replbridge.session import lock as lock_mod
from replbridge.session.lock import (
    LockRecord,
    SessionLock,
    can_break_lock,
    get_lock_status,
    read_lock_file,
    with_lock,
)
from replbridge.utils.exceptions import LockError, LockTimeoutError


def _iso_ago(seconds: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat()


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _write_lock(path, **overrides):
    record = {
        "lockId": "other-holder",
        "pid": os.getpid(),
        "processStartTime": get_process_start_time(os.getpid()),
        "hostname": socket.gethostname(),
        "acquiredAt": _iso_ago(0),
    }
    record.update(overrides)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({k: v for k, v in record.items() if v is not None}), encoding="utf-8")


def _lock(paths, settings, session_id="alpha"):
    return SessionLock(session_id, paths=paths, settings=settings)


def test_acquire_writes_record_and_release_removes_it(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    lock.acquire()
    assert lock.is_held()

    data = json.loads(lock.lock_path.read_text(encoding="utf-8"))
    assert data["lockId"] == lock.lock_id
    assert data["pid"] == os.getpid()
    assert data["hostname"] == socket.gethostname()
    assert "acquiredAt" in data
    assert lock.lock_info.lock_id == lock.lock_id

    lock.release()
    assert not lock.is_held()
    assert not lock.lock_path.exists()


@pytest.mark.posix
def test_lock_file_is_private(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    lock.acquire()
    try:
        assert oct(lock.lock_path.stat().st_mode & 0o777) == oct(0o600)
    finally:
        lock.release()


def test_second_instance_sees_held_by_other(paths, fast_lock_config):
    first = _lock(paths, fast_lock_config)
    first.acquire()
    try:
        attempt = _lock(paths, fast_lock_config).try_acquire()
        assert not attempt.acquired
        assert attempt.reason == "held_by_other"
        assert attempt.holder.lock_id == first.lock_id
    finally:
        first.release()


def test_acquire_times_out_with_last_holder(paths, fast_lock_config):
    first = _lock(paths, fast_lock_config)
    first.acquire()
    try:
        with pytest.raises(LockTimeoutError) as exc_info:
            _lock(paths, fast_lock_config).acquire(timeout=0.2)
        assert exc_info.value.last_holder.pid == os.getpid()
        assert exc_info.value.code == "LOCK_TIMEOUT"
        assert "Held by PID" in str(exc_info.value)
    finally:
        first.release()


def test_double_acquire_on_same_instance_raises(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    lock.acquire()
    try:
        with pytest.raises(LockError):
            lock.acquire()
    finally:
        lock.release()


def test_release_is_idempotent(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    lock.release()
    lock.acquire()
    lock.release()
    lock.release()
    assert not lock.lock_path.exists()


def test_release_leaves_foreign_lock_in_place(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    lock.acquire()
    _write_lock(lock.lock_path, lockId="someone-else")
    lock.release()
    assert lock.lock_path.exists()
    assert read_lock_file(lock.lock_path).lock_id == "someone-else"
    assert not lock.is_held()


def test_stale_lock_with_dead_holder_is_broken(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    _write_lock(lock.lock_path, pid=_dead_pid(), processStartTime=None, acquiredAt=_iso_ago(120))
    attempt = lock.try_acquire()
    assert attempt.acquired
    assert attempt.reason == "stale_broken"
    assert read_lock_file(lock.lock_path).lock_id == lock.lock_id
    lock.release()


def test_young_lock_is_never_broken_even_if_holder_is_dead(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    _write_lock(lock.lock_path, pid=_dead_pid(), processStartTime=None, acquiredAt=_iso_ago(5))
    attempt = lock.try_acquire()
    assert not attempt.acquired
    assert attempt.reason == "held_by_other"


def test_old_lock_with_live_verified_holder_is_kept(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    _write_lock(lock.lock_path, acquiredAt=_iso_ago(3600))
    assert lock.try_acquire().reason == "held_by_other"


def test_old_lock_with_reused_pid_is_broken(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    start = get_process_start_time(os.getpid())
    _write_lock(lock.lock_path, processStartTime=start - 1000, acquiredAt=_iso_ago(120))
    attempt = lock.try_acquire()
    assert attempt.acquired
    assert attempt.reason == "stale_broken"
    lock.release()


def test_remote_host_lock_uses_longer_threshold(fast_lock_config):
    record = LockRecord(
        lock_id="remote",
        pid=1,
        hostname=f"{socket.gethostname()}-elsewhere",
        acquired_at=_iso_ago(120),
    )
    assert not can_break_lock(record, fast_lock_config)
    old = record.model_copy(update={"acquired_at": _iso_ago(400)})
    assert can_break_lock(old, fast_lock_config)


def test_unparseable_lock_file_breakable_only_when_old(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    lock.lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock.lock_path.write_text("{not json", encoding="utf-8")
    assert lock.try_acquire().reason == "held_by_other"

    old = time.time() - 600
    os.utime(lock.lock_path, (old, old))
    attempt = lock.try_acquire()
    assert attempt.acquired
    lock.release()


@pytest.mark.parametrize(
    "payload",
    [
        {"lockId": "x", "pid": "123", "hostname": "h", "acquiredAt": "2024-01-01T00:00:00Z"},
        {"lockId": "x", "pid": True, "hostname": "h", "acquiredAt": "2024-01-01T00:00:00Z"},
        {"lockId": "x", "pid": 0, "hostname": "h", "acquiredAt": "2024-01-01T00:00:00Z"},
        {"lockId": "x", "pid": 1, "hostname": "h", "acquiredAt": "yesterday"},
        {"lockId": "x", "pid": 1, "hostname": "h", "acquiredAt": "2024-01-01T00:00:00Z", "processStartTime": "1.0"},
        {"pid": 1, "hostname": "h", "acquiredAt": "2024-01-01T00:00:00Z"},
    ],
)
def test_read_lock_file_rejects_malformed_records(tmp_path, payload):
    path = tmp_path / "session.lock"
    path.write_text(json.dumps(payload), encoding="utf-8")
    assert read_lock_file(path) is None


@pytest.mark.posix
def test_symlinked_lock_file_is_never_followed(paths, fast_lock_config, tmp_path):
    victim = tmp_path / "victim.txt"
    victim.write_text("keep me", encoding="utf-8")
    lock = _lock(paths, fast_lock_config)
    lock.lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock.lock_path.symlink_to(victim)

    assert read_lock_file(lock.lock_path) is None
    attempt = lock.try_acquire()
    assert attempt.acquired
    assert not lock.lock_path.is_symlink()
    assert victim.read_text(encoding="utf-8") == "keep me"
    lock.release()


def test_force_break_removes_any_lock(paths, fast_lock_config):
    lock = _lock(paths, fast_lock_config)
    _write_lock(lock.lock_path)
    lock.force_break()
    assert not lock.lock_path.exists()
    lock.force_break()


def test_with_lock_releases_on_error(paths, fast_lock_config):
    with pytest.raises(RuntimeError):
        with with_lock("alpha", paths=paths, settings=fast_lock_config) as lock:
            assert lock.is_held()
            raise RuntimeError("boom")
    assert not paths.lock_path("alpha").exists()


def test_get_lock_status_reports_holder(paths, fast_lock_config):
    assert not get_lock_status("alpha", paths=paths, settings=fast_lock_config).locked
    lock = _lock(paths, fast_lock_config)
    lock.acquire()
    try:
        status = get_lock_status("alpha", paths=paths, settings=fast_lock_config)
        assert status.locked
        assert status.owned_by_us
        assert not status.can_break
        assert status.lock_info.lock_id == lock.lock_id
    finally:
        lock.release()


def test_sessions_lock_independently(paths, fast_lock_config):
    a = _lock(paths, fast_lock_config, "alpha")
    b = _lock(paths, fast_lock_config, "beta")
    a.acquire()
    b.acquire()
    assert a.is_held() and b.is_held()
    a.release()
    b.release()


def test_concurrent_acquirers_never_overlap(paths, fast_lock_config):
    holders = {"current": 0, "max": 0, "entries": 0}
    guard = threading.Lock()
    errors: list[BaseException] = []

    def worker():
        try:
            for _ in range(5):
                lock = _lock(paths, fast_lock_config.model_copy(update={"acquire_timeout": 20.0}))
                lock.acquire()
                try:
                    with guard:
                        holders["current"] += 1
                        holders["entries"] += 1
                        holders["max"] = max(holders["max"], holders["current"])
                    time.sleep(0.005)
                    with guard:
                        holders["current"] -= 1
                finally:
                    lock.release()
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert not errors
    assert holders["entries"] == 40
    assert holders["max"] == 1


class _InterleavingClock:
    """Stands in for the lock module's `time`, running `hook` once on the first wall-clock read."""

    def __init__(self, hook):
        self.hook = hook
        self.fired = False

    monotonic = staticmethod(time.monotonic)
    sleep = staticmethod(time.sleep)

    def time(self):
        if not self.fired:
            self.fired = True
            self.hook()
        return time.time()


def test_old_corrupt_lock_is_broken_by_only_one_waiter(paths, fast_lock_config, monkeypatch):
    first = _lock(paths, fast_lock_config)
    second = _lock(paths, fast_lock_config)
    lock_path = first.lock_path
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text("{truncated", encoding="utf-8")
    old = time.time() - 3600
    os.utime(lock_path, (old, old))

    # `first` runs a complete acquisition after `second` has judged the corrupt
    # file stale but before `second` removes it.
    first_attempts = []
    monkeypatch.setattr(lock_mod, "time", _InterleavingClock(lambda: first_attempts.append(first.try_acquire())))

    attempt = second.try_acquire()

    assert first_attempts[0].acquired
    assert not attempt.acquired
    assert attempt.reason == "held_by_other"
    assert read_lock_file(lock_path).lock_id == first.lock_id
    assert sorted(p.name for p in lock_path.parent.iterdir()) == [lock_path.name]
    first.release()


def test_losing_stale_breaker_restores_fresh_lock(paths, fast_lock_config, monkeypatch):
    lock = _lock(paths, fast_lock_config)
    _write_lock(lock.lock_path, lockId="stale-holder", pid=_dead_pid(), processStartTime=None, acquiredAt=_iso_ago(120))

    real_can_break = lock_mod.can_break_lock

    def judge_then_replace(info, settings):
        verdict = real_can_break(info, settings)
        # Another waiter breaks the stale lock and takes it before our rename.
        _write_lock(lock.lock_path, lockId="fresh-holder")
        return verdict

    monkeypatch.setattr(lock_mod, "can_break_lock", judge_then_replace)
    attempt = lock.try_acquire()

    assert not attempt.acquired
    assert attempt.reason == "held_by_other"
    assert read_lock_file(lock.lock_path).lock_id == "fresh-holder"
    assert sorted(p.name for p in lock.lock_path.parent.iterdir()) == [lock.lock_path.name]


@pytest.mark.posix
def test_symlink_replaced_by_real_lock_is_kept(paths, fast_lock_config, tmp_path, monkeypatch):
    lock = _lock(paths, fast_lock_config)
    lock.lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock.lock_path.symlink_to(tmp_path / "elsewhere")

    real_is_symlink = lock_mod._is_symlink
    calls = []

    def swap_after_first_check(path):
        result = real_is_symlink(path)
        if not calls:
            calls.append(path)
            path.unlink()
            _write_lock(path, lockId="fresh-holder")
        return result

    monkeypatch.setattr(lock_mod, "_is_symlink", swap_after_first_check)
    attempt = lock.try_acquire()

    assert not attempt.acquired
    assert read_lock_file(lock.lock_path).lock_id == "fresh-holder"
