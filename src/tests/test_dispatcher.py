"""
Tests for the unified MCP endpoint.

Tests validate:
- POST JSON-RPC handshake without Authorization
- -32001 with WWW-Authenticate for tools/call without a bridged token
- SSE handshake frames and keepalive
- WebSocket sessions, including stripped Upgrade headers over plain HTTP
- Bearer tokens looked up only for methods that need them
- Binary WebSocket frames answered with -32700
- 400 for plain GET, 405 for other methods, CORS preflight
"""

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock

# Add MCP server to path
mcp_server_path = Path(__file__).parent.parent
sys.path.insert(0, str(mcp_server_path))


def _rpc(method, message_id=1, params=None):
    body = {"jsonrpc": "2.0", "id": message_id, "method": method}
    if params is not None:
        body["params"] = params
    return body


class TestJsonRpcPost:
    """POST JSON-RPC tests."""

    def test_tools_list_without_authorization(self, client):
        response = client.post("/sse", json=_rpc("tools/list"))

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        names = {tool["name"] for tool in response.json()["result"]["tools"]}
        assert {"authenticate", "getProfile", "sendEmail", "getContacts"} <= names

    def test_initialize_then_notification(self, client):
        init = client.post("/sse", json=_rpc("initialize"))
        assert init.json()["result"]["serverInfo"]["name"] == "microsoft-365-mcp"

        notified = client.post(
            "/sse", json={"jsonrpc": "2.0", "method": "notifications/initialized"}
        )
        assert notified.status_code == 202
        assert notified.content == b""

    def test_tools_call_without_token_requires_auth(self, client):
        response = client.post(
            "/sse", json=_rpc("tools/call", params={"name": "getProfile", "arguments": {}})
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == -32001
        assert error["data"]["auth_url"] == "http://testserver/authorize"
        assert "authorization_uri" in response.headers["www-authenticate"]

    def test_authenticate_tool_without_token_requires_auth(self, client):
        response = client.post(
            "/sse", json=_rpc("tools/call", params={"name": "authenticate", "arguments": {}})
        )

        assert response.status_code == 401
        assert response.json()["error"]["data"]["auth_url"] == "http://testserver/authorize"

    def test_tools_call_with_unknown_token_requires_auth(self, client):
        response = client.post(
            "/sse",
            json=_rpc("tools/call", params={"name": "getProfile", "arguments": {}}),
            headers={"Authorization": "Bearer not-a-real-token"},
        )
        assert response.json()["error"]["code"] == -32001

    def test_unparseable_body(self, client):
        response = client.post(
            "/sse", content=b"{oops", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_subpath_is_served(self, client):
        response = client.post("/sse/message", json=_rpc("initialize"))
        assert response.status_code == 200

    def test_handshake_does_not_look_up_bearer(self, client, app, monkeypatch):
        lookup = AsyncMock(return_value=None)
        monkeypatch.setattr(app.state.provider, "load_access_token", lookup)

        response = client.post(
            "/sse",
            json=_rpc("tools/list"),
            headers={"Authorization": "Bearer not-a-real-token"},
        )

        assert response.status_code == 200
        lookup.assert_not_awaited()

    def test_tools_call_looks_up_bearer(self, client, app, monkeypatch):
        lookup = AsyncMock(return_value=None)
        monkeypatch.setattr(app.state.provider, "load_access_token", lookup)

        client.post(
            "/sse",
            json=_rpc("tools/call", params={"name": "getProfile", "arguments": {}}),
            headers={"Authorization": "Bearer not-a-real-token"},
        )

        lookup.assert_awaited_once_with("not-a-real-token")


class TestHttpErrors:
    """Non-JSON-RPC HTTP tests."""

    def test_plain_get_is_rejected(self, client):
        response = client.get("/sse", headers={"Accept": "application/json"})

        assert response.status_code == 400
        assert "text/event-stream" in response.text

    def test_put_is_not_allowed(self, client):
        response = client.put("/sse", content=b"{}")

        assert response.status_code == 405
        assert "POST" in response.headers["allow"]

    def test_options_preflight(self, client):
        response = client.options("/sse")

        assert response.status_code == 204
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_stripped_upgrade_is_never_sse(self, client):
        """Key/version headers without Upgrade must not fall through to SSE."""
        response = client.get(
            "/sse",
            headers={
                "Accept": "text/event-stream",
                "Sec-WebSocket-Key": "dGhlIHNhbXBsZSBub25jZQ==",
                "Sec-WebSocket-Version": "13",
            },
        )

        assert response.status_code == 426
        assert response.headers["upgrade"] == "websocket"
        assert response.headers["x-websocket-session"]


class TestServerSentEvents:
    """SSE stream tests."""

    def test_stream_sends_handshake_then_pings(self, client):
        response = client.get("/sse", headers={"Accept": "text/event-stream"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"

        frames = [
            json.loads(chunk[len("data: "):])
            for chunk in response.text.split("\n\n")
            if chunk.startswith("data: ")
        ]
        assert frames[0]["id"] == 1
        assert frames[0]["result"]["protocolVersion"] == "2024-11-05"
        assert frames[1]["id"] == 2
        assert frames[1]["result"]["tools"]
        assert all(frame["type"] == "ping" for frame in frames[2:])


class TestWebSocket:
    """WebSocket session tests."""

    def test_websocket_handshake_without_token(self, client):
        with client.websocket_connect("/sse", subprotocols=["mcp"]) as websocket:
            assert websocket.accepted_subprotocol == "mcp"

            websocket.send_text(json.dumps(_rpc("initialize")))
            init = websocket.receive_json()
            assert init["result"]["serverInfo"]["name"] == "microsoft-365-mcp"

            websocket.send_text(
                json.dumps(_rpc("tools/call", 2, {"name": "getProfile", "arguments": {}}))
            )
            error = websocket.receive_json()
            assert error["id"] == 2
            assert error["error"]["code"] == -32001

    def test_websocket_parse_error(self, client):
        with client.websocket_connect("/sse") as websocket:
            websocket.send_text("{broken")
            reply = websocket.receive_json()
            assert reply["error"]["code"] == -32700

    def test_notifications_get_no_reply(self, client):
        with client.websocket_connect("/sse") as websocket:
            websocket.send_text(json.dumps({"jsonrpc": "2.0", "method": "initialized"}))
            websocket.send_text(json.dumps(_rpc("ping", 5)))
            reply = websocket.receive_json()
            assert reply["id"] == 5

    def test_binary_frame_is_a_parse_error(self, client):
        with client.websocket_connect("/sse") as websocket:
            websocket.send_bytes(b'{"jsonrpc": "2.0", "id": 1, "method": "ping"}')
            reply = websocket.receive_json()
            assert reply["id"] is None
            assert reply["error"]["code"] == -32700

            websocket.send_text(json.dumps(_rpc("ping", 2)))
            assert websocket.receive_json()["id"] == 2

    def test_bearer_is_verified_on_first_tool_call(self, client, app, monkeypatch):
        lookup = AsyncMock(return_value=None)
        monkeypatch.setattr(app.state.provider, "load_access_token", lookup)
        headers = {"Authorization": "Bearer not-a-real-token"}

        with client.websocket_connect("/sse", headers=headers) as websocket:
            websocket.send_text(json.dumps(_rpc("initialize")))
            websocket.receive_json()
            lookup.assert_not_awaited()

            call = _rpc("tools/call", 2, {"name": "getProfile", "arguments": {}})
            websocket.send_text(json.dumps(call))
            assert websocket.receive_json()["error"]["code"] == -32001
            lookup.assert_awaited_once_with("not-a-real-token")
