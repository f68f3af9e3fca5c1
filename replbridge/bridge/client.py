"""One-shot JSON-RPC client over the bridge's Unix-domain socket."""

from __future__ import annotations

import errno
import socket
import time
import uuid
from pathlib import Path
from typing import Any

from loguru import logger

from replbridge.bridge.protocol import RpcRequest
from replbridge.bridge.serialization import decode_response_line, encode_request_line, to_remote_error
from replbridge.config.access import get_config
from replbridge.utils.exceptions import (
    BridgeConnectionError,
    BridgeTimeoutError,
    ResponseTooLargeError,
    RpcFramingError,
)

_RECV_CHUNK = 64 * 1024


def _remaining(deadline: float, method: str, timeout: float) -> float:
    left = deadline - time.monotonic()
    if left <= 0:
        raise BridgeTimeoutError(method, timeout)
    return left


def _connect_error(path: str, exc: OSError) -> BridgeConnectionError:
    if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
        return BridgeConnectionError(f"Socket does not exist at path: {path}", path, exc)
    if isinstance(exc, ConnectionRefusedError) or exc.errno == errno.ECONNREFUSED:
        return BridgeConnectionError(f"Connection refused - server not listening at: {path}", path, exc)
    return BridgeConnectionError(f"Socket connection error: {exc}", path, exc)


def send_request(
    socket_path: str | Path,
    method: str,
    params: dict[str, Any] | None = None,
    timeout: float | None = None,
    max_response_bytes: int | None = None,
) -> Any:
    """
    Send one request and wait for exactly one response line.

    The timeout is a wall-clock bound over connect, send and receive together.
    Omitted limits come from the transport section of the loaded config.

    Returns:
        The ``result`` member of the response.

    Raises:
        BridgeConnectionError: socket missing, refused, or reset.
        BridgeTimeoutError: no complete response within timeout.
        ResponseTooLargeError: response exceeded max_response_bytes.
        RpcFramingError: peer closed before a newline arrived.
        RpcProtocolError: unparseable JSON, wrong version tag or id mismatch.
        RpcRemoteError: the bridge returned an error envelope.
    """
    if timeout is None or max_response_bytes is None:
        transport = get_config().transport
        if timeout is None:
            timeout = transport.default_timeout
        if max_response_bytes is None:
            max_response_bytes = transport.max_response_bytes

    path = str(socket_path)
    req_id = str(uuid.uuid4())
    frame = RpcRequest(id=req_id, method=method, params=params or {})
    payload = encode_request_line(frame).encode("utf-8")
    deadline = time.monotonic() + timeout

    if not hasattr(socket, "AF_UNIX"):
        raise BridgeConnectionError("Unix-domain sockets are not supported on this platform", path)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.settimeout(_remaining(deadline, method, timeout))
        try:
            sock.connect(path)
        except TimeoutError as e:
            raise BridgeTimeoutError(method, timeout) from e
        except OSError as e:
            raise _connect_error(path, e) from e

        try:
            sock.settimeout(_remaining(deadline, method, timeout))
            sock.sendall(payload)
            buffer = bytearray()
            while True:
                sock.settimeout(_remaining(deadline, method, timeout))
                chunk = sock.recv(_RECV_CHUNK)
                if not chunk:
                    raise RpcFramingError(method)
                buffer.extend(chunk)
                if len(buffer) > max_response_bytes:
                    raise ResponseTooLargeError(max_response_bytes)
                newline = buffer.find(b"\n")
                if newline != -1:
                    line = bytes(buffer[:newline])
                    break
        except TimeoutError as e:
            raise BridgeTimeoutError(method, timeout) from e
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BridgeConnectionError(f"Socket connection error: {e}", path, e) from e
    finally:
        sock.close()

    response = decode_response_line(line, expected_id=req_id)
    if not response.ok:
        logger.debug(f"Bridge returned error for {method}: {response.error}")
        raise to_remote_error(response, fallback_method=method)
    return response.result
