"""
Bridge Manager - lifecycle of the per-session bridge subprocess.

- Spawn under a resolved interpreter environment, detached in its own session
- Reuse only after session id, canonical socket path, process identity and
  socket type all check out
- Terminate with SIGINT -> SIGTERM -> SIGKILL escalation against the process group
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path

from loguru import logger
from pydantic import ValidationError as SchemaError

from replbridge.bridge.environment import resolve_bridge_script, resolve_exec_env
from replbridge.bridge.registry import BridgeHandle, BridgeRegistry, StderrRing
from replbridge.bridge.types import BridgeRecord, EscalationResult, RecordReadResult
from replbridge.config.schema import BridgeConfig
from replbridge.infra.process import get_process_start_time, is_socket, kill_process_group, verify_process
from replbridge.session.paths import SessionPaths, shorten_session_id
from replbridge.utils.exceptions import BridgeSpawnError
from replbridge.utils.helpers import atomic_write_json, ensure_dir, utc_now_iso

SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.debug(f"Could not remove {path}: {e}")


class BridgeManager:
    """Owns spawn, reuse and termination of bridges for any number of sessions."""

    def __init__(
        self,
        paths: SessionPaths | None = None,
        settings: BridgeConfig | None = None,
        registry: BridgeRegistry | None = None,
    ):
        if settings is None:
            from replbridge.config.access import get_config

            settings = get_config().bridge
        self.paths = paths or SessionPaths.default()
        self.settings = settings
        self.registry = registry or BridgeRegistry()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def read_bridge_record(self, session_id: str) -> RecordReadResult:
        meta_path = self.paths.meta_path(session_id)
        try:
            raw = meta_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return RecordReadResult(status="missing")
        except (OSError, UnicodeDecodeError) as e:
            return RecordReadResult(status="invalid", error=str(e))
        try:
            return RecordReadResult(status="ok", record=BridgeRecord.model_validate_json(raw))
        except SchemaError as e:
            return RecordReadResult(status="invalid", error=f"{e.error_count()} schema error(s)")

    def write_record(self, record: BridgeRecord) -> None:
        atomic_write_json(self.paths.meta_path(record.session_id), record.to_payload())

    def delete_record(self, session_id: str) -> None:
        _unlink_quietly(self.paths.meta_path(session_id))

    def verify_process_identity(self, record: BridgeRecord) -> bool:
        """Alive, not a zombie, and the same process that was recorded. Fails closed."""
        self.registry.reap(record.session_id)
        return verify_process(record.pid, record.process_start_time)

    # ------------------------------------------------------------------
    # Spawn / ensure
    # ------------------------------------------------------------------

    def spawn_bridge(self, session_id: str, project_dir: str | Path | None = None) -> BridgeRecord:
        """
        Launch a fresh bridge and wait for its socket.

        Raises:
            ValidationError: socket path would exceed the AF_UNIX limit.
            EnvironmentNotFoundError: no interpreter available.
            BridgeSpawnError: script missing, early exit, or no socket in time.
        """
        socket_path = self.paths.socket_path(session_id)
        ensure_dir(self.paths.session_dir(session_id))
        script = resolve_bridge_script(self.settings.bridge_script)
        cwd = Path(project_dir) if project_dir else Path.cwd()
        exec_env = resolve_exec_env(cwd)

        _unlink_quietly(socket_path)

        env = os.environ.copy()
        env["PYTHONUNBUFFERED"] = "1"
        popen_kwargs: dict = {}
        if sys.platform == "win32":
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen(
                [exec_env.exec_path, str(script), str(socket_path)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                cwd=str(cwd),
                env=env,
                **popen_kwargs,
            )
        except OSError as e:
            raise BridgeSpawnError(f"Failed to launch {exec_env.exec_path}: {e}") from e

        ring = StderrRing(self.settings.stderr_cap_chars)
        reader = threading.Thread(
            target=self._stderr_loop,
            args=(proc, ring, shorten_session_id(session_id)),
            daemon=True,
        )
        reader.start()
        handle = BridgeHandle(proc=proc, stderr=ring, reader=reader)
        logger.info(f"Spawned bridge pid {proc.pid} for session {session_id} ({exec_env.kind}: {exec_env.exec_path})")

        self._wait_for_socket(handle, socket_path)

        record = BridgeRecord(
            pid=proc.pid,
            socket_path=str(socket_path),
            started_at=utc_now_iso(),
            session_id=session_id,
            env=exec_env,
            process_start_time=get_process_start_time(proc.pid),
        )
        self.write_record(record)
        self.registry.track(session_id, handle)
        return record

    def ensure_bridge(self, session_id: str, project_dir: str | Path | None = None) -> BridgeRecord:
        """Return the live bridge for a session, spawning one when the record does not hold up."""
        result = self.read_bridge_record(session_id)
        if result.status == "invalid":
            logger.warning(f"Discarding invalid bridge record for session {session_id}: {result.error}")
            self.delete_record(session_id)
        elif result.status == "ok":
            record = result.record
            expected_socket = str(self.paths.socket_path(session_id))
            if record.session_id != session_id:
                logger.warning(f"Bridge record sessionId mismatch ({record.session_id!r}); discarding")
            elif record.socket_path != expected_socket:
                logger.warning(f"Bridge record socketPath {record.socket_path!r} is not canonical; discarding")
            elif self.verify_process_identity(record):
                if is_socket(Path(record.socket_path)):
                    return record
                logger.warning(f"Bridge pid {record.pid} is alive without its socket; killing orphan")
                kill_process_group(record.pid, SIGKILL)
                self._reap(session_id, record.pid, self.settings.sigkill_wait)
            self.delete_record(session_id)
        return self.spawn_bridge(session_id, project_dir)

    def respawn_bridge(self, session_id: str, project_dir: str | Path | None = None) -> BridgeRecord:
        """Discard whatever bridge the session has and start a new one."""
        result = self.read_bridge_record(session_id)
        if result.status == "ok" and result.record.session_id == session_id:
            record = result.record
            if self.verify_process_identity(record):
                logger.info(f"Killing bridge pid {record.pid} before respawn")
                kill_process_group(record.pid, SIGKILL)
                self._reap(session_id, record.pid, self.settings.sigkill_wait)
        self.delete_record(session_id)
        return self.spawn_bridge(session_id, project_dir)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def kill_bridge_with_escalation(self, session_id: str, grace_period: float | None = None) -> EscalationResult:
        """
        Stop a session's bridge: SIGINT, then SIGTERM, then SIGKILL.

        Each stage signals the whole process group and waits, re-verifying
        identity rather than mere pid existence. A bridge that is already gone
        is reported as terminated without sending anything.
        """
        grace = self.settings.sigint_grace if grace_period is None else grace_period
        started = time.monotonic()
        result = self.read_bridge_record(session_id)
        if result.status != "ok" or result.record.session_id != session_id:
            self.delete_record(session_id)
            return EscalationResult(terminated=True, already_gone=True)

        record = result.record
        if not self.verify_process_identity(record):
            self._cleanup_after_exit(record)
            return EscalationResult(terminated=True, already_gone=True)

        stages = (
            ("SIGINT", signal.SIGINT, grace),
            ("SIGTERM", signal.SIGTERM, self.settings.sigterm_grace),
            ("SIGKILL", SIGKILL, self.settings.sigkill_wait),
        )
        terminated_by = None
        for name, sig, wait in stages:
            logger.info(f"Sending {name} to bridge group {record.pid} (session {session_id})")
            kill_process_group(record.pid, sig)
            if self._wait_for_exit(record, wait):
                terminated_by = name
                break

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if terminated_by is None:
            logger.error(f"Bridge pid {record.pid} survived SIGKILL after {elapsed_ms}ms")
            return EscalationResult(terminated=False, terminated_by="SIGKILL", termination_time_ms=elapsed_ms)

        self._cleanup_after_exit(record)
        return EscalationResult(terminated=True, terminated_by=terminated_by, termination_time_ms=elapsed_ms)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _stderr_loop(proc: subprocess.Popen, ring: StderrRing, tag: str) -> None:
        if not proc.stderr:
            return
        for line in proc.stderr:
            ring.write(line)
            text = line.strip()
            if text:
                logger.debug("[bridge {}] {}", tag, text)

    def _wait_for_socket(self, handle: BridgeHandle, socket_path: Path) -> None:
        deadline = time.monotonic() + self.settings.spawn_timeout
        while not is_socket(socket_path):
            if handle.proc.poll() is not None:
                stderr = self._drain_stderr(handle)
                raise BridgeSpawnError(
                    f"Bridge exited with code {handle.proc.returncode} before creating its socket. "
                    f"Stderr: {stderr or '(empty)'}",
                    stderr=stderr,
                )
            if time.monotonic() > deadline:
                kill_process_group(handle.pid, SIGKILL)
                try:
                    handle.proc.wait(timeout=self.settings.sigkill_wait)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Bridge pid {handle.pid} did not exit after SIGKILL")
                if socket_path.exists() and not is_socket(socket_path):
                    _unlink_quietly(socket_path)
                stderr = self._drain_stderr(handle)
                raise BridgeSpawnError(
                    f"Bridge failed to create socket in {self.settings.spawn_timeout}s. "
                    f"Stderr: {stderr or '(empty)'}",
                    stderr=stderr,
                )
            time.sleep(self.settings.spawn_poll_interval)

    def _drain_stderr(self, handle: BridgeHandle) -> str:
        if handle.reader is not None:
            handle.reader.join(timeout=self.settings.sigkill_wait)
        return handle.stderr.getvalue()

    def _wait_for_exit(self, record: BridgeRecord, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if not self.verify_process_identity(record):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.settings.exit_poll_interval)

    def _reap(self, session_id: str, pid: int, timeout: float) -> None:
        handle = self.registry.get_handle(session_id, pid)
        if handle is None:
            return
        try:
            handle.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Bridge pid {pid} still running after SIGKILL")
            return
        self.registry.forget(session_id)

    def _cleanup_after_exit(self, record: BridgeRecord) -> None:
        session_dir = self.paths.session_dir(record.session_id)
        self.delete_record(record.session_id)
        self.registry.forget(record.session_id)
        socket_path = Path(record.socket_path)
        if socket_path.parent == session_dir:
            _unlink_quietly(socket_path)
