import json

import pytest
from fastapi.testclient import TestClient

from portalbridge.app import app
from portalbridge.config import reset_settings_cache


@pytest.fixture
def client():
    return TestClient(app)


def _rpc(client, method, params=None, request_id=1, **kwargs):
    body = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        body["params"] = params
    return client.post("/mcp", json=body, **kwargs)


class TestRestSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        generated = client.get("/healthz").headers["X-Request-ID"]
        assert generated and generated != "req-42"

    def test_list_tools(self, client):
        response = client.get("/tools")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        names = [tool["name"] for tool in body["data"]["tools"]]
        assert "search_directory" in names

    def test_call_tool(self, client):
        response = client.post("/tools/set_default_user", json={"arguments": {"userEmail": "a@x.com"}})
        assert response.status_code == 200
        assert response.json()["data"]["success"] is True

        listed = client.post("/tools/list_users", json={}).json()["data"]
        assert listed["users"][0]["email"] == "a@x.com"

    def test_tool_failure_is_still_a_result(self, client):
        response = client.post("/tools/check_authentication", json={"arguments": {}})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is False
        assert data["error_code"] == "identity_required"

    def test_unknown_tool_is_404_envelope(self, client):
        response = client.post("/tools/nope", json={})
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "tool_not_found"


class TestJsonRpc:
    def test_initialize(self, client):
        result = _rpc(client, "initialize", {"protocolVersion": "2024-11-05"}).json()["result"]
        assert result["serverInfo"]["name"] == "portalbridge"
        assert "tools" in result["capabilities"]

    def test_tools_list(self, client):
        body = _rpc(client, "tools/list").json()
        assert body["id"] == 1
        assert any(tool["name"] == "login" for tool in body["result"]["tools"])
        assert "error" not in body

    def test_tools_call_wraps_result_as_text(self, client):
        body = _rpc(
            client, "tools/call", {"name": "set_default_user", "arguments": {"userEmail": "a@x.com"}}
        ).json()
        result = body["result"]
        assert result["isError"] is False
        payload = json.loads(result["content"][0]["text"])
        assert payload["user"] == "a@x.com"

    def test_tool_failure_sets_is_error(self, client):
        result = _rpc(client, "tools/call", {"name": "check_authentication"}).json()["result"]
        assert result["isError"] is True
        assert json.loads(result["content"][0]["text"])["error_code"] == "identity_required"

    def test_unknown_tool_is_invalid_params(self, client):
        body = _rpc(client, "tools/call", {"name": "nope", "arguments": {}}).json()
        assert body["error"]["code"] == -32602

    def test_unknown_method(self, client):
        body = _rpc(client, "resources/list", request_id="abc").json()
        assert body["id"] == "abc"
        assert body["error"]["code"] == -32601

    def test_parse_error(self, client):
        response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.json()["error"]["code"] == -32700

    def test_invalid_request(self, client):
        response = client.post("/mcp", json={"jsonrpc": "2.0", "id": 3})
        body = response.json()
        assert body["id"] == 3
        assert body["error"]["code"] == -32600

    def test_notification_has_no_body(self, client):
        response = client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert response.status_code == 202
        assert response.content == b""


class TestApiKey:
    @pytest.fixture
    def keyed(self, monkeypatch):
        monkeypatch.setenv("MCP_API_KEY", "s3cret-key")
        reset_settings_cache()
        yield
        monkeypatch.delenv("MCP_API_KEY", raising=False)
        reset_settings_cache()

    def test_missing_key_is_rejected(self, client, keyed):
        response = client.get("/tools")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_header_and_bearer_keys_are_accepted(self, client, keyed):
        assert client.get("/tools", headers={"X-API-Key": "s3cret-key"}).status_code == 200
        assert client.get("/tools", headers={"Authorization": "Bearer s3cret-key"}).status_code == 200
        assert client.get("/tools", headers={"X-API-Key": "wrong"}).status_code == 401

    def test_healthz_stays_open(self, client, keyed):
        assert client.get("/healthz").status_code == 200

    def test_no_key_configured_means_open(self, client):
        assert client.get("/tools").status_code == 200
