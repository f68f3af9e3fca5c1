import json

import pytest

from replbridge.bridge.protocol import JSONRPC_VERSION, RpcErrorKind, RpcRequest
from replbridge.bridge.serialization import (
    decode_response_line,
    encode_request_line,
    normalize_rpc_error,
    to_remote_error,
)
from replbridge.utils.exceptions import RpcProtocolError


def test_encode_request_line_is_one_tagged_line():
    line = encode_request_line(RpcRequest(id="1", method="execute", params={"code": "x = 1"}))
    assert line.endswith("\n")
    assert line.count("\n") == 1
    payload = json.loads(line)
    assert payload == {"jsonrpc": "2.0", "id": "1", "method": "execute", "params": {"code": "x = 1"}}


def test_encode_request_line_escapes_embedded_newlines():
    line = encode_request_line(RpcRequest(id="1", method="execute", params={"code": "a = 1\nb = 2"}))
    assert line.count("\n") == 1


def test_decode_result_envelope():
    line = json.dumps({"jsonrpc": JSONRPC_VERSION, "id": "abc", "result": {"status": "ok"}})
    response = decode_response_line(line, expected_id="abc")
    assert response.ok
    assert response.result == {"status": "ok"}


def test_decode_error_envelope_maps_kind():
    line = json.dumps(
        {"jsonrpc": "2.0", "id": "abc", "error": {"code": -32001, "message": "too slow", "data": {"t": 5}}}
    )
    response = decode_response_line(line, expected_id="abc")
    assert not response.ok
    assert response.error.kind is RpcErrorKind.EXECUTION_TIMEOUT
    err = to_remote_error(response, fallback_method="execute")
    assert err.code == "RPC_EXECUTION_TIMEOUT"
    assert err.wire_code == -32001
    assert err.data == {"t": 5}


def test_decode_rejects_foreign_id():
    line = json.dumps({"jsonrpc": "2.0", "id": "other", "result": None})
    with pytest.raises(RpcProtocolError, match="ID mismatch"):
        decode_response_line(line, expected_id="mine")


@pytest.mark.parametrize("version", ["1.0", None, 2.0])
def test_decode_rejects_wrong_version(version):
    payload = {"id": "abc", "result": None}
    if version is not None:
        payload["jsonrpc"] = version
    with pytest.raises(RpcProtocolError, match="Invalid JSON-RPC version"):
        decode_response_line(json.dumps(payload), expected_id="abc")


@pytest.mark.parametrize("line", ["{oops", "[1, 2]", b"\xff\xfe"])
def test_decode_rejects_unparseable(line):
    with pytest.raises(RpcProtocolError):
        decode_response_line(line, expected_id="abc")


@pytest.mark.parametrize(
    "code,kind",
    [
        (-32700, RpcErrorKind.PARSE_ERROR),
        (-32600, RpcErrorKind.INVALID_REQUEST),
        (-32601, RpcErrorKind.METHOD_NOT_FOUND),
        (-32602, RpcErrorKind.INVALID_PARAMS),
        (-32603, RpcErrorKind.INTERNAL_ERROR),
        (-32000, RpcErrorKind.EXECUTION_ERROR),
        (-32002, RpcErrorKind.INTERRUPTED),
        (-32004, RpcErrorKind.QUEUE_TIMEOUT),
        (-32005, RpcErrorKind.BRIDGE_FAILED),
        (-1, RpcErrorKind.UNKNOWN),
        ("-32700", RpcErrorKind.UNKNOWN),
        (True, RpcErrorKind.UNKNOWN),
    ],
)
def test_error_kind_from_wire_code(code, kind):
    assert RpcErrorKind.from_code(code) is kind


def test_normalize_rpc_error_with_non_dict_payload():
    err = normalize_rpc_error("boom")
    assert err.code == 0
    assert err.message == "rpc failed"
    assert err.kind is RpcErrorKind.UNKNOWN
