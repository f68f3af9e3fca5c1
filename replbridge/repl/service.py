"""REPL service: Lock -> Ensure bridge -> one RPC -> Release, rendered as text."""

from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import ValidationError as SchemaError

from replbridge.bridge.client import send_request
from replbridge.bridge.manager import BridgeManager
from replbridge.bridge.registry import BridgeRegistry
from replbridge.bridge.types import BridgeRecord
from replbridge.config.schema import Config
from replbridge.repl import formatting as fmt
from replbridge.repl.models import ReplRequest
from replbridge.session.lock import SessionLock
from replbridge.session.paths import validate_path_segment
from replbridge.utils.exceptions import (
    BridgeConnectionError,
    BridgeTimeoutError,
    EnvironmentNotFoundError,
    LockTimeoutError,
    ReplBridgeError,
    RpcRemoteError,
    ValidationError,
    classify_exception,
    sanitize_error_message,
)


class ReplService:
    """
    Entry point for REPL actions against a persistent per-session bridge.

    Every call returns a string; failures are rendered with remediation
    instead of being raised.
    """

    def __init__(
        self,
        manager: BridgeManager | None = None,
        registry: BridgeRegistry | None = None,
        config: Config | None = None,
    ):
        if config is None:
            from replbridge.config.access import get_config

            config = get_config()
        self.config = config
        if manager is None:
            manager = BridgeManager(settings=config.bridge, registry=registry or BridgeRegistry())
        self.manager = manager
        self.registry = manager.registry

    def handle(self, raw: dict[str, Any]) -> str:
        try:
            request = ReplRequest.model_validate(raw)
        except SchemaError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            return fmt.format_validation_error(errors)

        session_id = request.session_id
        try:
            validate_path_segment(session_id, "researchSessionID")
        except ValidationError as e:
            return fmt.format_invalid_session(e.message)

        if request.action == "execute" and not request.code:
            return fmt.format_missing_code()

        lock = SessionLock(session_id, paths=self.manager.paths, settings=self.config.lock)
        try:
            lock.acquire(request.queue_timeout or self.config.repl.queue_timeout)
        except LockTimeoutError as e:
            return fmt.format_lock_timeout(e, session_id)
        except ReplBridgeError as e:
            return fmt.format_general_error(e, session_id, request.action)

        try:
            try:
                record = self.manager.ensure_bridge(session_id, request.project_dir)
            except EnvironmentNotFoundError as e:
                return fmt.format_bridge_startup_failed(e, session_id, e.remediation)
            except (ReplBridgeError, OSError) as e:
                logger.error(f"Bridge startup failed for session {session_id}: {sanitize_error_message(str(e))}")
                return fmt.format_bridge_startup_failed(e, session_id)

            if request.action == "execute":
                return self._execute(request, record)
            if request.action == "reset":
                return self._reset(session_id, record)
            if request.action == "get_state":
                return self._get_state(session_id, record)
            return self._interrupt(session_id, record)
        except Exception as e:
            code, _, _ = classify_exception(e)
            logger.error(f"REPL {request.action} failed [{code}]: {sanitize_error_message(str(e))}")
            return fmt.format_general_error(e, session_id, request.action)
        finally:
            lock.release()

    def _call(self, record: BridgeRecord, method: str, params: dict[str, Any] | None, timeout: float) -> Any:
        return send_request(
            record.socket_path,
            method,
            params,
            timeout=timeout,
            max_response_bytes=self.config.transport.max_response_bytes,
        )

    def _execute(self, request: ReplRequest, record: BridgeRecord) -> str:
        session_id = request.session_id
        count = self.registry.next_execution_count(session_id)
        try:
            return self._run_code(request, record, count)
        except BridgeConnectionError as e:
            logger.warning(f"Bridge for session {session_id} unreachable ({e.message}); respawning once")

        try:
            record = self.manager.respawn_bridge(session_id, request.project_dir)
            return self._run_code(request, record, count)
        except BridgeConnectionError as e:
            return fmt.format_connection_error(e, session_id)
        except ReplBridgeError as e:
            return fmt.format_connection_error(BridgeConnectionError(e.message, record.socket_path, e), session_id)

    def _run_code(self, request: ReplRequest, record: BridgeRecord, count: int) -> str:
        """One execute exchange. Connectivity errors propagate for the respawn retry."""
        timeout = request.execution_timeout or self.config.repl.execution_timeout
        try:
            result = self._call(
                record,
                "execute",
                {"code": request.code, "timeout": timeout},
                timeout + self.config.repl.response_slack,
            )
        except BridgeTimeoutError:
            return fmt.format_execution_timeout(request.session_id, request.execution_label, timeout)
        except RpcRemoteError as e:
            return fmt.format_remote_failure(e, request.session_id)
        return fmt.format_execute_result(result, request.session_id, request.execution_label, count)

    def _reset(self, session_id: str, record: BridgeRecord) -> str:
        try:
            result = self._call(record, "reset", {}, self.config.repl.reset_timeout)
        except ReplBridgeError as e:
            logger.warning(f"Reset failed for session {session_id} ({e.code}); terminating bridge")
            self.manager.kill_bridge_with_escalation(session_id)
            self.registry.reset_execution_counter(session_id)
            return fmt.format_bridge_restarted(session_id)
        return fmt.format_reset_result(result, session_id)

    def _get_state(self, session_id: str, record: BridgeRecord) -> str:
        try:
            result = self._call(record, "get_state", {}, self.config.repl.state_timeout)
        except BridgeTimeoutError:
            return fmt.format_state_timeout(session_id)
        except BridgeConnectionError as e:
            return fmt.format_connection_error(e, session_id)
        return fmt.format_state_result(result, session_id)

    def _interrupt(self, session_id: str, record: BridgeRecord) -> str:
        grace = self.manager.settings.sigint_grace
        try:
            result = self._call(record, "interrupt", {}, min(grace, self.config.repl.interrupt_timeout))
        except ReplBridgeError as e:
            logger.warning(f"Graceful interrupt failed for session {session_id} ({e.code}); escalating")
            return fmt.format_escalation(session_id, self.manager.kill_bridge_with_escalation(session_id, grace))
        status = str(result.get("status") or "interrupted") if isinstance(result, dict) else "interrupted"
        return fmt.format_interrupt_result(session_id, status, terminated_by="graceful")
