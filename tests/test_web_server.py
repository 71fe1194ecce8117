"""Tests for the web backend's REST routes and WebSocket chat."""

import pytest
from fastapi.testclient import TestClient

from cloud_cost_shared.data_models import ModelResponse, ServerCommand, ToolDescriptor, ToolInvocation
from cloud_cost_shared.events import EventHub
from cloud_cost_shared.exceptions import InstallError, NotConnectedError, UnexpectedExitError
from cloud_cost_web.app.config import WebSettings
from cloud_cost_web.fast_api_server import create_app

CONNECT_BODY = {"owner": "acme", "repo": "pricing-mcp", "branch": "main"}
TOOL = ToolDescriptor(name="list_supported_instances", description="List", input_schema={"type": "object"})


class FakeInstaller:
    def __init__(self, error=None):
        self.error = error
        self.installed = []
        self.cleaned = []

    def install(self, config):
        if self.error:
            raise self.error
        self.installed.append(config)
        return ServerCommand(command="node", args=["index.js"])

    def cleanup(self, config):
        self.cleaned.append(config)


class FakeManager:
    def __init__(self):
        self._events = EventHub("connected", "disconnected", "unexpected_exit")
        self.connected = False
        self.exit_error = None
        self.calls = []

    def subscribe(self, event, callback):
        return self._events.subscribe(event, callback)

    def is_connected(self):
        return self.connected

    async def start(self, server=None):
        self.connected = True
        self.exit_error = None
        self._events.emit("connected")

    async def stop(self):
        if self.connected:
            self.connected = False
            self._events.emit("disconnected")

    async def list_tools(self):
        if not self.connected:
            raise NotConnectedError("MCP client not connected. Call start() first.")
        return [TOOL]

    async def call_tool(self, name, arguments=None):
        self.calls.append(name)
        return {"regions": ["us-east-1"]}

    def crash(self):
        self.connected = False
        self.exit_error = UnexpectedExitError(1)
        self._events.emit("unexpected_exit", self.exit_error)
        self._events.emit("disconnected")


class FakeLLM:
    """Calls one tool on the first round of every turn, then answers."""

    def __init__(self):
        self.rounds = 0

    async def generate(self, messages, instructions=None, tools=None, name_map=None):
        self.rounds += 1
        if self.rounds % 2:
            return ModelResponse(text="", tool_calls=[ToolInvocation(id=f"c{self.rounds}", name=TOOL.name, arguments={})])
        return ModelResponse(text="Supported regions: us-east-1")


@pytest.fixture
def parts():
    return {"installer": FakeInstaller(), "manager": FakeManager(), "llm": FakeLLM()}


@pytest.fixture
def client(parts):
    settings = WebSettings(openai_api_key="sk-test", cors_origins=["http://localhost:3000"])
    app = create_app(settings, **parts)
    with TestClient(app) as client:
        yield client


def test_health_and_index(client, parts):
    health = client.get("/healthz").json()
    assert health["ok"] is True
    assert health["mcp_connected"] is False
    assert "timestamp" in health

    index = client.get("/").json()
    assert index["endpoints"]["chat"] == "/ws/chat"


def test_cors_headers(client):
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_connect_status_tools_disconnect(client, parts):
    response = client.post("/api/mcp/connect", json={**CONNECT_BODY, "subdirectory": "mcp-server"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "connected"
    assert body["config"]["subdirectory"] == "mcp-server"
    assert body["tools"][0]["name"] == "list_supported_instances"

    status = client.get("/api/mcp/status").json()
    assert status["connected"] is True
    assert status["status"] == "connected"

    tools = client.get("/api/mcp/tools").json()
    assert [t["name"] for t in tools["tools"]] == ["list_supported_instances"]

    response = client.post("/api/mcp/disconnect")
    assert response.status_code == 200
    assert response.json()["status"] == "disconnected"
    assert parts["installer"].cleaned[-1].repo == "pricing-mcp"
    assert client.get("/api/mcp/status").json()["connected"] is False


def test_connect_same_config_twice_installs_once(client, parts):
    client.post("/api/mcp/connect", json=CONNECT_BODY)
    response = client.post("/api/mcp/connect", json=CONNECT_BODY)
    assert response.status_code == 200
    assert len(parts["installer"].installed) == 1


def test_connect_new_config_replaces_previous(client, parts):
    client.post("/api/mcp/connect", json=CONNECT_BODY)
    client.post("/api/mcp/connect", json={**CONNECT_BODY, "repo": "other-mcp"})
    assert [c.repo for c in parts["installer"].installed] == ["pricing-mcp", "other-mcp"]
    assert parts["installer"].cleaned[0].repo == "pricing-mcp"


@pytest.mark.parametrize("body", [{"owner": "acme"}, {"owner": "acme", "repo": "", "branch": "main"}])
def test_connect_missing_fields(client, body):
    response = client.post("/api/mcp/connect", json=body)
    assert response.status_code == 400
    assert response.json() == {"status": "error", "message": "Missing required fields: owner, repo, branch"}


def test_connect_invalid_json(client):
    response = client.post("/api/mcp/connect", content=b"{nope", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_connect_install_failure(parts):
    parts["installer"] = FakeInstaller(InstallError("Repository or branch not found: acme/pricing-mcp@main"))
    app = create_app(WebSettings(openai_api_key="sk-test"), **parts)
    with TestClient(app) as client:
        response = client.post("/api/mcp/connect", json=CONNECT_BODY)
        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert "Repository or branch not found" in body["message"]
        assert client.get("/api/mcp/status").json()["status"] == "error"


def test_tools_when_disconnected(client):
    response = client.get("/api/mcp/tools")
    assert response.status_code == 503
    assert response.json() == {"error": "MCP server not connected", "tools": []}


def test_chat_requires_connection(client):
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "hi"})
        assert ws.receive_json() == {
            "type": "error",
            "message": "MCP server not connected. Please connect to an MCP server first.",
        }


def test_chat_rejects_bad_frames(client):
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text("{not json")
        assert ws.receive_json()["message"] == "Invalid JSON"
        ws.send_json({"type": "typing"})
        assert ws.receive_json()["message"] == "Unknown message type: typing"


def test_chat_turn(client, parts):
    client.post("/api/mcp/connect", json=CONNECT_BODY)

    with client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "Which regions?"})

        echo = ws.receive_json()
        assert (echo["type"], echo["role"], echo["content"]) == ("message", "user", "Which regions?")
        assert "timestamp" in echo

        assert ws.receive_json() == {"type": "tool_call", "tool_name": "list_supported_instances"}

        answer = ws.receive_json()
        assert (answer["role"], answer["content"]) == ("assistant", "Supported regions: us-east-1")

    assert parts["manager"].calls == ["list_supported_instances"]


def test_chat_status_frames(client, parts):
    with client.websocket_connect("/ws/chat") as ws:
        client.post("/api/mcp/connect", json=CONNECT_BODY)
        assert ws.receive_json() == {"type": "status", "status": "connected"}

        # Exit events fire on the event loop, like the real exit watcher
        client.portal.call(parts["manager"].crash)
        frame = ws.receive_json()
        assert frame["status"] == "disconnected"
        assert "exited unexpectedly" in frame["message"]

    assert client.get("/api/mcp/status").json()["status"] == "error"


class BrokenLLM:
    async def generate(self, messages, instructions=None, tools=None, name_map=None):
        raise KeyError("output")


def test_chat_unexpected_error_sends_error_frame(parts):
    parts["llm"] = BrokenLLM()
    app = create_app(WebSettings(openai_api_key="sk-test"), **parts)
    with TestClient(app) as client:
        client.post("/api/mcp/connect", json=CONNECT_BODY)
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "message", "content": "Which regions?"})
            assert ws.receive_json()["role"] == "user"
            assert ws.receive_json() == {"type": "error", "message": "Internal Server Error"}

            # The session keeps serving messages afterwards
            ws.send_json({"type": "message", "content": "Again?"})
            assert ws.receive_json()["content"] == "Again?"
