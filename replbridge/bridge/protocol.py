"""JSON-RPC 2.0 frames exchanged with the bridge over its socket."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

JSONRPC_VERSION = "2.0"


class RpcErrorKind(Enum):
    """Error kinds a bridge may report; the value is the numeric wire code."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    EXECUTION_ERROR = -32000
    EXECUTION_TIMEOUT = -32001
    INTERRUPTED = -32002
    QUEUE_TIMEOUT = -32004
    BRIDGE_FAILED = -32005
    UNKNOWN = 0

    @classmethod
    def from_code(cls, code: Any) -> "RpcErrorKind":
        if isinstance(code, bool) or not isinstance(code, int):
            return cls.UNKNOWN
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


@dataclass(slots=True)
class RpcError:
    """Error member of a response envelope."""

    code: int
    message: str
    data: Any = None

    @property
    def kind(self) -> RpcErrorKind:
        return RpcErrorKind.from_code(self.code)


@dataclass(slots=True)
class RpcRequest:
    """Request frame: one JSON object per line."""

    id: str
    method: str
    params: dict[str, Any]


@dataclass(slots=True)
class RpcResponse:
    """Response frame carrying either result or error."""

    id: str
    ok: bool
    result: Any = None
    error: RpcError | None = None
