"""Per-process state shared by the manager and the REPL service."""

from __future__ import annotations

import subprocess
import threading
from collections import deque
from dataclasses import dataclass

TRUNCATION_MARKER = "...[truncated]\n"


class StderrRing:
    """Thread-safe text buffer that keeps the most recent max_chars of output."""

    def __init__(self, max_chars: int = 64 * 1024):
        self.max_chars = max_chars
        self._chunks: deque[str] = deque()
        self._size = 0
        self._truncated = False
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._chunks.append(text)
            self._size += len(text)
            while self._size > self.max_chars and self._chunks:
                overflow = self._size - self.max_chars
                head = self._chunks[0]
                if len(head) <= overflow:
                    self._chunks.popleft()
                    self._size -= len(head)
                else:
                    self._chunks[0] = head[overflow:]
                    self._size -= overflow
                self._truncated = True

    @property
    def truncated(self) -> bool:
        return self._truncated

    def getvalue(self) -> str:
        with self._lock:
            text = "".join(self._chunks)
            return TRUNCATION_MARKER + text if self._truncated else text


@dataclass(slots=True)
class BridgeHandle:
    """A bridge spawned by this process: its Popen object and stderr tail."""

    proc: subprocess.Popen
    stderr: StderrRing
    reader: threading.Thread | None = None

    @property
    def pid(self) -> int:
        return self.proc.pid

    def reap(self) -> bool:
        """Collect the exit status if the child has exited. True when gone."""
        return self.proc.poll() is not None


class BridgeRegistry:
    """
    Execution counters and spawned-child handles, keyed by session id.

    Construct once per process and pass it to BridgeManager and ReplService.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}
        self._handles: dict[str, BridgeHandle] = {}
        self._lock = threading.RLock()

    def next_execution_count(self, session_id: str) -> int:
        with self._lock:
            count = self._counters.get(session_id, 0) + 1
            self._counters[session_id] = count
            return count

    def execution_count(self, session_id: str) -> int:
        with self._lock:
            return self._counters.get(session_id, 0)

    def reset_execution_counter(self, session_id: str) -> None:
        with self._lock:
            self._counters.pop(session_id, None)

    def track(self, session_id: str, handle: BridgeHandle) -> None:
        with self._lock:
            self._handles[session_id] = handle

    def get_handle(self, session_id: str, pid: int | None = None) -> BridgeHandle | None:
        with self._lock:
            handle = self._handles.get(session_id)
        if handle is not None and pid is not None and handle.pid != pid:
            return None
        return handle

    def forget(self, session_id: str) -> BridgeHandle | None:
        with self._lock:
            return self._handles.pop(session_id, None)

    def reap(self, session_id: str) -> None:
        """Poll a tracked child so an exited bridge does not linger as a zombie."""
        handle = self.get_handle(session_id)
        if handle is not None and handle.reap():
            self.forget(session_id)
