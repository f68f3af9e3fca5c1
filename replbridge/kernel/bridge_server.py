"""Reference bridge: a persistent Python namespace served over a Unix socket.

Usage: python bridge_server.py <socket_path>

Runs inside the project's interpreter, so it only uses the standard library.
Speaks newline-delimited JSON-RPC 2.0 with the methods execute, interrupt,
reset and get_state. SIGINT or SIGTERM stops the server and removes the socket.
"""

from __future__ import annotations

import ast
import contextlib
import ctypes
import io
import json
import os
import signal
import socketserver
import sys
import threading
import time
import traceback
from datetime import datetime, timezone

JSONRPC_VERSION = "2.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
EXECUTION_TIMEOUT = -32001


class ExecutionTimeout(Exception):
    pass


class Kernel:
    """Holds the user namespace and the thread currently running user code."""

    def __init__(self):
        self.namespace = self._fresh_namespace()
        self._exec_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._running_thread: int | None = None

    @staticmethod
    def _fresh_namespace() -> dict:
        return {"__name__": "__main__", "__builtins__": __builtins__}

    def _raise_in_running(self, exc_type: type) -> bool:
        with self._state_lock:
            tid = self._running_thread
            if tid is None:
                return False
            ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(tid), ctypes.py_object(exc_type))
            return True

    def execute(self, code: str, timeout: float | None) -> dict:
        started_at = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        t0 = time.monotonic()
        stdout, stderr = io.StringIO(), io.StringIO()
        error = None
        with self._exec_lock:
            timer = None
            if timeout and timeout > 0:
                timer = threading.Timer(timeout, self._raise_in_running, args=(ExecutionTimeout,))
                timer.daemon = True
            with self._state_lock:
                self._running_thread = threading.get_ident()
            try:
                if timer is not None:
                    timer.start()
                with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
                    self._run(code)
            except ExecutionTimeout:
                error = {"type": "ExecutionTimeout", "message": f"Execution exceeded {timeout}s", "traceback": ""}
            except KeyboardInterrupt:
                error = {"type": "KeyboardInterrupt", "message": "Execution interrupted", "traceback": ""}
            except BaseException as e:  # user code may raise SystemExit
                error = {
                    "type": type(e).__name__,
                    "message": str(e),
                    "traceback": traceback.format_exc(),
                }
            finally:
                with self._state_lock:
                    self._running_thread = None
                if timer is not None:
                    timer.cancel()
        return {
            "success": error is None,
            "stdout": stdout.getvalue(),
            "stderr": stderr.getvalue(),
            "error": error,
            "timing": {
                "started_at": started_at,
                "duration_ms": int((time.monotonic() - t0) * 1000),
            },
            "memory": memory_usage(),
        }

    def _run(self, code: str) -> None:
        tree = ast.parse(code, mode="exec")
        last = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last = ast.Expression(tree.body.pop().value)
        exec(compile(tree, "<repl>", "exec"), self.namespace)
        if last is not None:
            value = eval(compile(last, "<repl>", "eval"), self.namespace)
            if value is not None:
                print(repr(value))

    def interrupt(self) -> dict:
        if self._raise_in_running(KeyboardInterrupt):
            return {"status": "interrupted"}
        return {"status": "idle"}

    def reset(self) -> dict:
        with self._exec_lock:
            self.namespace = self._fresh_namespace()
        return {"status": "reset", "memory": memory_usage()}

    def get_state(self) -> dict:
        names = sorted(k for k in self.namespace if not k.startswith("_"))
        return {"memory": memory_usage(), "variables": names, "variable_count": len(names)}


def memory_usage() -> dict:
    """RSS/VMS in MB from /proc when available, else peak RSS from resource."""
    try:
        with open("/proc/self/statm") as f:
            vms_pages, rss_pages = (int(x) for x in f.read().split()[:2])
        page = os.sysconf("SC_PAGE_SIZE")
        return {"rss_mb": rss_pages * page / 1048576, "vms_mb": vms_pages * page / 1048576}
    except (OSError, ValueError):
        pass
    try:
        import resource

        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is bytes on macOS, kilobytes elsewhere.
        rss_mb = peak / 1048576 if sys.platform == "darwin" else peak / 1024
        return {"rss_mb": rss_mb, "vms_mb": 0.0}
    except (ImportError, OSError):
        return {"rss_mb": 0.0, "vms_mb": 0.0}


def _error(req_id, code: int, message: str, data=None) -> dict:
    err = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "error": err}


def dispatch(kernel: Kernel, line: bytes) -> dict:
    try:
        request = json.loads(line)
    except (ValueError, UnicodeDecodeError) as e:
        return _error(None, PARSE_ERROR, f"Parse error: {e}")
    if not isinstance(request, dict) or request.get("jsonrpc") != JSONRPC_VERSION:
        return _error(None, INVALID_REQUEST, "Invalid request")
    req_id = request.get("id")
    method = request.get("method")
    params = request.get("params") or {}
    if not isinstance(params, dict):
        return _error(req_id, INVALID_PARAMS, "params must be an object")

    if method == "execute":
        code = params.get("code")
        if not isinstance(code, str):
            return _error(req_id, INVALID_PARAMS, "execute requires a string 'code'")
        timeout = params.get("timeout")
        result = kernel.execute(code, timeout if isinstance(timeout, (int, float)) else None)
        if result["error"] and result["error"]["type"] == "ExecutionTimeout":
            return _error(req_id, EXECUTION_TIMEOUT, result["error"]["message"], result)
    elif method == "interrupt":
        result = kernel.interrupt()
    elif method == "reset":
        result = kernel.reset()
    elif method == "get_state":
        result = kernel.get_state()
    else:
        return _error(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")
    return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "result": result}


class RequestHandler(socketserver.StreamRequestHandler):
    def handle(self):
        for line in self.rfile:
            if not line.strip():
                continue
            try:
                response = dispatch(self.server.kernel, line)
            except Exception as e:
                response = _error(None, INTERNAL_ERROR, f"Internal error: {e}")
            self.wfile.write((json.dumps(response, default=repr) + "\n").encode("utf-8"))
            self.wfile.flush()


class BridgeServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: str, kernel: Kernel):
        self.kernel = kernel
        old_umask = os.umask(0o177)
        try:
            super().__init__(socket_path, RequestHandler)
        finally:
            os.umask(old_umask)


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def main(argv: list[str]) -> int:
    if len(argv) != 2:
        print("usage: bridge_server.py <socket_path>", file=sys.stderr)
        return 2
    socket_path = argv[1]
    with contextlib.suppress(FileNotFoundError):
        os.unlink(socket_path)
    server = BridgeServer(socket_path, Kernel())
    signal.signal(signal.SIGTERM, _terminate)
    print(f"bridge listening on {socket_path} (pid {os.getpid()})", file=sys.stderr)
    try:
        server.serve_forever(poll_interval=0.1)
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(socket_path)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
