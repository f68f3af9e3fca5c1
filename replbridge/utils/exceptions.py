"""
Exception hierarchy and error handling utilities for replbridge.

Provides:
- Custom exception classes with error codes
- Error categorization (retryable, fatal, validation, timeout)
- Safe error message formatting (no sensitive data leak)
"""

from __future__ import annotations

import json
import re
import socket
from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Error categories for classification."""
    RETRYABLE = "retryable"
    FATAL = "fatal"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    CONTENTION = "contention"


class ReplBridgeError(Exception):
    """Base exception for all replbridge errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        category: ErrorCategory = ErrorCategory.FATAL,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(ReplBridgeError):
    """Input validation error (bad session id or path segment). Never retried."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", category=ErrorCategory.VALIDATION, details=details)


class LockError(ReplBridgeError):
    """Lock file misuse or tampering (symlinked lock, double acquire)."""

    def __init__(self, message: str, lock_path: str | None = None):
        details = {"lock_path": lock_path} if lock_path else {}
        super().__init__(message, code="LOCK_ERROR", category=ErrorCategory.FATAL, details=details)


class LockTimeoutError(ReplBridgeError):
    """Lock could not be acquired within the timeout."""

    def __init__(self, lock_path: str, timeout_seconds: float, last_holder: Any | None = None):
        if last_holder is not None:
            holder = f"Held by PID {last_holder.pid} on {last_holder.hostname} since {last_holder.acquired_at}"
        else:
            holder = "Unknown holder"
        super().__init__(
            f"Failed to acquire lock within {timeout_seconds}s. {holder}. Lock path: {lock_path}",
            code="LOCK_TIMEOUT",
            category=ErrorCategory.CONTENTION,
            details={"lock_path": lock_path, "timeout_seconds": timeout_seconds},
        )
        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds
        self.last_holder = last_holder


class BridgeConnectionError(ReplBridgeError):
    """Socket missing or refusing connections; the bridge is probably dead."""

    def __init__(self, message: str, socket_path: str, cause: BaseException | None = None):
        super().__init__(
            message,
            code="BRIDGE_CONNECTION",
            category=ErrorCategory.RETRYABLE,
            details={"socket_path": socket_path},
        )
        self.socket_path = socket_path
        self.cause = cause


class BridgeTimeoutError(ReplBridgeError):
    """RPC exchange exceeded its wall-clock bound. The bridge keeps running."""

    def __init__(self, method: str, timeout_seconds: float):
        super().__init__(
            f"Request timeout after {timeout_seconds}s for method \"{method}\"",
            code="BRIDGE_TIMEOUT",
            category=ErrorCategory.TIMEOUT,
            details={"method": method, "timeout_seconds": timeout_seconds},
        )
        self.method = method
        self.timeout_seconds = timeout_seconds


class RpcProtocolError(ReplBridgeError):
    """Malformed or mismatched response envelope. Fatal to the exchange."""

    def __init__(self, message: str, code: str = "RPC_PROTOCOL"):
        super().__init__(message, code=code, category=ErrorCategory.FATAL)


class RpcFramingError(RpcProtocolError):
    """Peer closed the socket before a complete response line arrived."""

    def __init__(self, method: str):
        super().__init__(
            f"Socket closed without sending complete response (method: \"{method}\")",
            code="RPC_FRAMING",
        )
        self.method = method


class ResponseTooLargeError(RpcProtocolError):
    """Response exceeded the accumulated size bound."""

    def __init__(self, limit_bytes: int):
        super().__init__(f"Response exceeded maximum size of {limit_bytes} bytes", code="RPC_RESPONSE_TOO_LARGE")
        self.limit_bytes = limit_bytes


class RpcRemoteError(ReplBridgeError):
    """Bridge answered with an error envelope."""

    def __init__(self, kind: Any, wire_code: int, message: str, data: Any = None):
        super().__init__(
            message,
            code=f"RPC_{kind.name}",
            category=ErrorCategory.FATAL,
            details={"wire_code": wire_code, "data": data},
        )
        self.kind = kind
        self.wire_code = wire_code
        self.data = data


class BridgeSpawnError(ReplBridgeError):
    """Bridge subprocess failed to start or to create its socket."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message, code="BRIDGE_SPAWN_FAILED", category=ErrorCategory.FATAL, details={"stderr": stderr})
        self.stderr = stderr


class EnvironmentNotFoundError(ReplBridgeError):
    """No usable interpreter environment exists for the project."""

    def __init__(self, project_dir: str, remediation: str):
        super().__init__(
            f"No Python environment found for {project_dir}. {remediation}",
            code="ENV_NOT_FOUND",
            category=ErrorCategory.FATAL,
            details={"project_dir": project_dir, "remediation": remediation},
        )
        self.remediation = remediation


_SENSITIVE_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password|auth)[=:]\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
]


def sanitize_error_message(message: str, replacement: str = "[REDACTED]") -> str:
    """Remove sensitive information from error messages."""
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def classify_exception(exc: BaseException) -> tuple[str, ErrorCategory, bool]:
    """
    Classify an exception and return (error_code, category, should_retry).

    Returns:
        Tuple of (error_code, category, should_retry)
    """
    if isinstance(exc, ReplBridgeError):
        return exc.code, exc.category, exc.category == ErrorCategory.RETRYABLE

    if isinstance(exc, FileNotFoundError):
        return "FILE_NOT_FOUND", ErrorCategory.NOT_FOUND, False

    if isinstance(exc, PermissionError):
        return "PERMISSION_DENIED", ErrorCategory.PERMISSION, False

    if isinstance(exc, (TimeoutError, socket.timeout)):
        return "TIMEOUT", ErrorCategory.TIMEOUT, False

    if isinstance(exc, ConnectionError):
        return "CONNECTION_ERROR", ErrorCategory.RETRYABLE, True

    if isinstance(exc, json.JSONDecodeError):
        return "JSON_PARSE_ERROR", ErrorCategory.VALIDATION, False

    if isinstance(exc, ValueError):
        return "INVALID_VALUE", ErrorCategory.VALIDATION, False

    return "INTERNAL_ERROR", ErrorCategory.FATAL, False
