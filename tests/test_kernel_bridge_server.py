import json

import pytest

from replbridge.kernel import bridge_server
from replbridge.kernel.bridge_server import Kernel, dispatch


def _call(kernel, method, params=None, req_id="1"):
    line = json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}}).encode()
    return dispatch(kernel, line)


@pytest.fixture
def kernel():
    return Kernel()


def test_execute_keeps_state_between_calls(kernel):
    first = _call(kernel, "execute", {"code": "x = 40"})
    assert first["result"]["success"]
    second = _call(kernel, "execute", {"code": "print(x + 2)"})
    assert second["id"] == "1"
    assert second["result"]["stdout"] == "42\n"


def test_execute_echoes_last_expression(kernel):
    result = _call(kernel, "execute", {"code": "a = 2\na * 21"})["result"]
    assert result["stdout"] == "42\n"
    assert result["timing"]["duration_ms"] >= 0
    assert "rss_mb" in result["memory"]


def test_execute_reports_user_exceptions(kernel):
    result = _call(kernel, "execute", {"code": "1 / 0"})["result"]
    assert not result["success"]
    assert result["error"]["type"] == "ZeroDivisionError"
    assert "Traceback" in result["error"]["traceback"]


def test_execute_timeout_is_error_envelope(kernel):
    response = _call(kernel, "execute", {"code": "while True:\n    pass", "timeout": 0.2})
    assert response["error"]["code"] == bridge_server.EXECUTION_TIMEOUT


def test_execute_requires_code(kernel):
    assert _call(kernel, "execute", {})["error"]["code"] == bridge_server.INVALID_PARAMS


def test_reset_and_get_state(kernel):
    _call(kernel, "execute", {"code": "alpha = 1\nbeta = 2\n_hidden = 3"})
    state = _call(kernel, "get_state")["result"]
    assert state["variables"] == ["alpha", "beta"]
    assert state["variable_count"] == 2

    assert _call(kernel, "reset")["result"]["status"] == "reset"
    assert _call(kernel, "get_state")["result"]["variable_count"] == 0


def test_interrupt_when_idle(kernel):
    assert _call(kernel, "interrupt")["result"] == {"status": "idle"}


def test_unknown_method_and_bad_json(kernel):
    assert _call(kernel, "nope")["error"]["code"] == bridge_server.METHOD_NOT_FOUND
    assert dispatch(kernel, b"{broken")["error"]["code"] == bridge_server.PARSE_ERROR
    assert dispatch(kernel, b'{"id": "1", "method": "reset"}')["error"]["code"] == bridge_server.INVALID_REQUEST
