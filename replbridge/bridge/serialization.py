"""Serialization helpers for bridge RPC frames."""

from __future__ import annotations

import json
from typing import Any

from replbridge.bridge.protocol import JSONRPC_VERSION, RpcError, RpcRequest, RpcResponse
from replbridge.utils.exceptions import RpcProtocolError, RpcRemoteError


def safe_dict(value: Any) -> dict[str, Any]:
    """Return the value when dict-like, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def encode_request_line(request: RpcRequest) -> str:
    """Encode a request frame into one newline-terminated line of JSON."""
    payload = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request.id,
        "method": request.method,
        "params": request.params,
    }
    return json.dumps(payload, ensure_ascii=False) + "\n"


def normalize_rpc_error(error: Any) -> RpcError:
    """Normalize an error member; unknown shapes still yield an RpcError."""
    row = safe_dict(error)
    code = row.get("code")
    return RpcError(
        code=code if isinstance(code, int) and not isinstance(code, bool) else 0,
        message=str(row.get("message") or "rpc failed"),
        data=row.get("data"),
    )


def decode_response_line(line: bytes | str, *, expected_id: str) -> RpcResponse:
    """
    Decode and validate one response line.

    Raises RpcProtocolError for unparseable JSON, a wrong version tag or an id
    that does not match the request.
    """
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RpcProtocolError(f"Failed to parse JSON-RPC response: {e}") from e
    if not isinstance(payload, dict):
        raise RpcProtocolError("Failed to parse JSON-RPC response: not an object")

    version = payload.get("jsonrpc")
    if version != JSONRPC_VERSION:
        raise RpcProtocolError(f'Invalid JSON-RPC version: expected "{JSONRPC_VERSION}", got "{version}"')
    resp_id = payload.get("id")
    if resp_id != expected_id:
        raise RpcProtocolError(f'Response ID mismatch: expected "{expected_id}", got "{resp_id}"')

    if payload.get("error") is not None:
        return RpcResponse(id=expected_id, ok=False, error=normalize_rpc_error(payload["error"]))
    return RpcResponse(id=expected_id, ok=True, result=payload.get("result"))


def to_remote_error(response: RpcResponse, *, fallback_method: str) -> RpcRemoteError:
    """Convert an error response to RpcRemoteError."""
    err = response.error or RpcError(code=0, message=f"{fallback_method} failed")
    return RpcRemoteError(err.kind, err.code, err.message, err.data)
