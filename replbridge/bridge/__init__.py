"""Bridge subprocess lifecycle and socket transport."""

from .client import send_request
from .environment import resolve_bridge_script, resolve_exec_env
from .manager import BridgeManager
from .protocol import JSONRPC_VERSION, RpcError, RpcErrorKind, RpcRequest, RpcResponse
from .registry import BridgeHandle, BridgeRegistry, StderrRing
from .serialization import decode_response_line, encode_request_line, normalize_rpc_error, safe_dict
from .types import BridgeRecord, EscalationResult, ExecEnv, RecordReadResult

__all__ = [
    "BridgeHandle",
    "BridgeManager",
    "BridgeRecord",
    "BridgeRegistry",
    "EscalationResult",
    "ExecEnv",
    "JSONRPC_VERSION",
    "RecordReadResult",
    "RpcError",
    "RpcErrorKind",
    "RpcRequest",
    "RpcResponse",
    "StderrRing",
    "decode_response_line",
    "encode_request_line",
    "normalize_rpc_error",
    "resolve_bridge_script",
    "resolve_exec_env",
    "safe_dict",
    "send_request",
]
