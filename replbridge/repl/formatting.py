"""Human-readable renderings of REPL results and failures."""

from __future__ import annotations

import json
from typing import Any

from replbridge.bridge.serialization import safe_dict
from replbridge.bridge.types import EscalationResult
from replbridge.utils.exceptions import (
    BridgeConnectionError,
    LockTimeoutError,
    RpcRemoteError,
    classify_exception,
    sanitize_error_message,
)

VENV_HINT = [
    "Ensure you have a Python virtual environment:",
    "  python -m venv .venv",
    "  .venv/bin/pip install pandas numpy matplotlib",
]


def _memory_lines(memory: Any) -> list[str]:
    row = safe_dict(memory)
    return [
        f"RSS: {float(row.get('rss_mb') or 0):.1f} MB",
        f"VMS: {float(row.get('vms_mb') or 0):.1f} MB",
    ]


def format_execute_result(
    result: Any,
    session_id: str,
    execution_label: str | None = None,
    execution_count: int | None = None,
) -> str:
    row = safe_dict(result)
    lines = ["=== Python REPL Execution ===", f"Session: {session_id}"]
    if execution_label:
        lines.append(f"Label: {execution_label}")
    if execution_count is not None:
        lines.append(f"Execution #: {execution_count}")
    lines.append("")

    if row.get("stdout"):
        lines += ["--- Output ---", str(row["stdout"]).rstrip(), ""]
    if row.get("stderr"):
        lines += ["--- Errors ---", str(row["stderr"]).rstrip(), ""]

    markers = row.get("markers")
    if isinstance(markers, list) and markers:
        lines.append("--- Markers ---")
        for marker in markers:
            m = safe_dict(marker)
            subtype = f":{m['subtype']}" if m.get("subtype") else ""
            lines.append(f"[{m.get('type', 'note')}{subtype}] {m.get('content', '')}")
        lines.append("")

    timing = safe_dict(row.get("timing"))
    if timing:
        lines += [
            "--- Timing ---",
            f"Duration: {float(timing.get('duration_ms') or 0) / 1000:.3f}s",
            f"Started: {timing.get('started_at', '')}",
            "",
        ]
    if row.get("memory"):
        lines += ["--- Memory ---", *_memory_lines(row["memory"]), ""]

    error = safe_dict(row.get("error"))
    if error:
        lines += [
            "=== Execution Failed ===",
            f"Error Type: {error.get('type', 'Error')}",
            f"Message: {error.get('message', '')}",
        ]
        if error.get("traceback"):
            lines += ["", "Traceback:", str(error["traceback"]).rstrip()]
        lines.append("")
    elif not row.get("success"):
        lines.append("=== Execution Failed ===")

    if row.get("success"):
        lines.append("=== Execution Complete ===")
    return "\n".join(lines).rstrip()


def format_state_result(result: Any, session_id: str) -> str:
    row = safe_dict(result)
    variables = [str(v) for v in row.get("variables") or []]
    lines = [
        "=== Python REPL State ===",
        f"Session: {session_id}",
        "",
        "--- Memory ---",
        *_memory_lines(row.get("memory")),
        "",
        "--- Variables ---",
        f"Count: {row.get('variable_count', len(variables))}",
    ]
    if variables:
        lines.append("")
        for i in range(0, len(variables), 10):
            lines.append(", ".join(variables[i : i + 10]))
    else:
        lines.append("(no user variables defined)")
    lines += ["", "=== State Retrieved ==="]
    return "\n".join(lines)


def format_reset_result(result: Any, session_id: str) -> str:
    row = safe_dict(result)
    return "\n".join(
        [
            "=== Python REPL Reset ===",
            f"Session: {session_id}",
            f"Status: {row.get('status', 'reset')}",
            "",
            "--- Memory After Reset ---",
            *_memory_lines(row.get("memory")),
            "",
            "=== Namespace Cleared ===",
        ]
    )


def format_interrupt_result(
    session_id: str,
    status: str,
    terminated_by: str | None = None,
    termination_time_ms: int | None = None,
) -> str:
    lines = ["=== Python REPL Interrupt ===", f"Session: {session_id}", f"Status: {status}"]
    if terminated_by:
        lines.append(f"Terminated By: {terminated_by}")
    if termination_time_ms is not None:
        lines.append(f"Termination Time: {termination_time_ms}ms")
    lines += ["", "=== Execution Interrupted ==="]
    return "\n".join(lines)


def format_escalation(session_id: str, result: EscalationResult) -> str:
    if result.already_gone:
        return format_interrupt_result(session_id, "already_stopped")
    status = "force_killed" if result.terminated else "kill_failed"
    return format_interrupt_result(session_id, status, result.terminated_by, result.termination_time_ms)


def format_validation_error(errors: list[str]) -> str:
    return "\n".join(["=== Validation Error ===", "", "Invalid input parameters:", *[f"  - {e}" for e in errors]])


def format_invalid_session(message: str) -> str:
    return "\n".join(
        [
            "=== Invalid Session ID ===",
            "",
            f"Error: {message}",
            "",
            "Session IDs must be safe path segments without:",
            "  - Path separators (/ or \\)",
            "  - Parent directory references (..)",
            "  - Null bytes",
            "  - Windows reserved names (CON, PRN, etc.)",
        ]
    )


def format_missing_code() -> str:
    return "\n".join(
        [
            "=== Missing Code ===",
            "",
            'The "execute" action requires the "code" parameter.',
            "",
            "Example:",
            '  action: "execute"',
            "  code: \"print('Hello!')\"",
        ]
    )


def format_lock_timeout(error: LockTimeoutError, session_id: str) -> str:
    lines = [
        "=== Session Busy ===",
        f"Session: {session_id}",
        "",
        "The session is currently busy processing another request.",
        f"Queue timeout: {error.timeout_seconds}s",
        "",
    ]
    holder = error.last_holder
    if holder is not None:
        lines += [
            "Current holder:",
            f"  PID: {holder.pid}",
            f"  Host: {holder.hostname}",
            f"  Since: {holder.acquired_at}",
            "",
        ]
    lines += [
        "Suggestions:",
        "  1. Wait and retry later",
        '  2. Use the "interrupt" action to stop the current execution',
        '  3. Use the "reset" action to clear the session',
    ]
    return "\n".join(lines)


def format_bridge_startup_failed(error: BaseException, session_id: str, remediation: str | None = None) -> str:
    message = getattr(error, "message", None) or str(error)
    lines = ["=== Bridge Startup Failed ===", f"Session: {session_id}", "", f"Error: {sanitize_error_message(message)}", ""]
    stderr = getattr(error, "stderr", "")
    if stderr:
        lines += ["Bridge stderr:", stderr.rstrip()[-4000:], ""]
    lines += remediation.splitlines() if remediation else VENV_HINT
    return "\n".join(lines)


def format_connection_error(error: BridgeConnectionError, session_id: str) -> str:
    return "\n".join(
        [
            "=== Connection Error ===",
            f"Session: {session_id}",
            "",
            f"Error: {error.message}",
            f"Socket: {error.socket_path}",
            "",
            "Troubleshooting:",
            "  1. The bridge process may have crashed - retry will auto-restart",
            '  2. Use "reset" action to force restart the bridge',
            "  3. Ensure .venv exists with Python installed",
        ]
    )


def format_execution_timeout(session_id: str, execution_label: str | None, timeout_seconds: float) -> str:
    return "\n".join(
        [
            "=== Execution Timeout ===",
            f"Session: {session_id}",
            f"Label: {execution_label or '(none)'}",
            "",
            f"The code execution exceeded the timeout of {timeout_seconds:g} seconds.",
            "",
            "The execution is still running in the background.",
            'Use the "interrupt" action to stop it.',
        ]
    )


def format_remote_failure(error: RpcRemoteError, session_id: str) -> str:
    lines = [
        "=== Execution Failed ===",
        f"Session: {session_id}",
        "",
        f"Error Code: {error.wire_code} ({error.kind.name})",
        f"Message: {error.message}",
    ]
    if error.data:
        lines.append(f"Data: {json.dumps(error.data, indent=2, default=str)}")
    return "\n".join(lines)


def format_bridge_restarted(session_id: str) -> str:
    return "\n".join(
        [
            "=== Bridge Restarted ===",
            f"Session: {session_id}",
            "",
            "The bridge was unresponsive and has been terminated.",
            "A new bridge will be spawned on the next request.",
            "",
            "Memory has been cleared.",
        ]
    )


def format_state_timeout(session_id: str) -> str:
    return "\n".join(
        [
            "=== State Retrieval Timeout ===",
            f"Session: {session_id}",
            "",
            "Could not retrieve state within timeout.",
            "The bridge may be busy with a long-running execution.",
        ]
    )


def format_general_error(error: BaseException, session_id: str, action: str) -> str:
    code, category, _ = classify_exception(error)
    message = getattr(error, "message", None) or str(error)
    return "\n".join(
        [
            "=== Error ===",
            f"Session: {session_id}",
            f"Action: {action}",
            "",
            f"Type: {type(error).__name__}",
            f"Code: {code} ({category.value})",
            f"Message: {sanitize_error_message(message)}",
        ]
    )
