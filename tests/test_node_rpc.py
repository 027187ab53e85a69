"""
Unit tests for the daemon JSON-RPC client (transport is faked).
"""

import io
import json
from urllib.error import HTTPError, URLError

import pytest

import node_rpc
from node_rpc import NodeRPC, RpcError


class FakeResponse:
    def __init__(self, body):
        self.body = json.dumps(body).encode("utf-8")

    def read(self):
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def transport(monkeypatch):
    """Queue of responses/exceptions returned by urlopen, plus captured requests."""
    state = {"queue": [], "requests": []}

    def fake_urlopen(req, timeout=None):
        state["requests"].append((req, timeout))
        item = state["queue"].pop(0)
        if isinstance(item, Exception):
            raise item
        return FakeResponse(item)

    monkeypatch.setattr(node_rpc.urllib.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(node_rpc.time, "sleep", lambda _s: None)
    return state


@pytest.fixture
def rpc():
    return NodeRPC("127.0.0.1", 9766, "user", "pass", timeout=3)


class TestNodeRPC:
    """Tests for request building and error mapping."""

    def test_result(self, rpc, transport):
        transport["queue"].append({"result": 812345, "error": None, "id": "explorer"})
        assert rpc.get_block_count() == 812345
        req, timeout = transport["requests"][0]
        assert timeout == 3.0
        assert req.full_url == "http://127.0.0.1:9766/"
        assert req.get_header("Authorization").startswith("Basic ")
        assert json.loads(req.data)["method"] == "getblockcount"

    def test_hashrate_params(self, rpc, transport):
        transport["queue"].append({"result": 1.5e9, "error": None})
        assert rpc.get_network_hash_ps(0, -1, 1) == 1.5e9
        payload = json.loads(transport["requests"][0][0].data)
        assert payload["method"] == "getnetworkhashps"
        assert payload["params"] == [0, -1, 1]

    def test_difficulty_param(self, rpc, transport):
        transport["queue"].append({"result": 42.0, "error": None})
        assert rpc.get_difficulty(1) == 42.0
        assert json.loads(transport["requests"][0][0].data)["params"] == [1]

    def test_daemon_error(self, rpc, transport):
        transport["queue"].append({"result": None, "error": {"code": -8, "message": "Block height out of range"}})
        with pytest.raises(RpcError) as exc:
            rpc.get_block_hash(10**9)
        assert exc.value.code == -8
        assert "out of range" in exc.value.message

    def test_http_500_with_json_body(self, rpc, transport):
        body = json.dumps({"result": None, "error": {"code": -28, "message": "Loading block index..."}}).encode()
        transport["queue"].append(HTTPError("http://127.0.0.1:9766/", 500, "Internal Server Error", {}, io.BytesIO(body)))
        with pytest.raises(RpcError) as exc:
            rpc.get_block_count()
        assert exc.value.code == -28

    def test_http_401_plain_body(self, rpc, transport):
        transport["queue"].append(HTTPError("http://127.0.0.1:9766/", 401, "Unauthorized", {}, io.BytesIO(b"")))
        with pytest.raises(RpcError) as exc:
            rpc.get_block_count()
        assert exc.value.code == 401
        assert len(transport["requests"]) == 1

    def test_retry_once_on_transport_error(self, rpc, transport):
        transport["queue"].extend([URLError("connection refused"), {"result": 7, "error": None}])
        assert rpc.get_block_count() == 7
        assert len(transport["requests"]) == 2

    def test_second_transport_error_raises(self, rpc, transport):
        transport["queue"].extend([URLError("refused"), URLError("refused")])
        with pytest.raises(URLError):
            rpc.get_block_count()

    def test_header_verbose(self, rpc, transport):
        transport["queue"].append({"result": {"height": 5, "version": 0x30090000, "difficulty": 1.0, "time": 9}})
        assert rpc.get_block_header("ab" * 32)["height"] == 5
        assert json.loads(transport["requests"][0][0].data)["params"] == ["ab" * 32, True]
