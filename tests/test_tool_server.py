"""Tests for the cloud cost MCP server's JSON-RPC handling."""

import io
import json

import pytest
from mcp.types import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
)

from cloud_cost_mcp.app.config import Config
from cloud_cost_mcp.app.main import handle_line, process, serve
from cloud_cost_mcp.server.router import list_tools


def _request(method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _call(calculator, name, arguments=None):
    response = process(_request("tools/call", {"name": name, "arguments": arguments or {}}), calculator)
    return response["result"]


def test_initialize_echoes_supported_version(calculator):
    response = process(
        _request("initialize", {"protocolVersion": "2024-11-05", "clientInfo": {"name": "test"}}),
        calculator,
    )
    result = response["result"]
    assert response["id"] == 1
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"]["name"] == "cloud-cost-calculator"
    assert "tools" in result["capabilities"]


def test_initialize_unknown_version_falls_back(calculator):
    response = process(_request("initialize", {"protocolVersion": "1999-01-01"}), calculator)
    assert response["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION


def test_ping(calculator):
    assert process(_request("ping"), calculator)["result"] == {}


def test_tools_list(calculator):
    response = process(_request("tools/list"), calculator)
    names = [t["name"] for t in response["result"]["tools"]]
    assert names == ["calculate_instance_savings", "list_supported_instances"]
    schema = response["result"]["tools"][0]["inputSchema"]
    assert schema["required"] == ["instances"]


def test_router_tools_match_protocol_listing():
    assert {t.name for t in list_tools()} == {"calculate_instance_savings", "list_supported_instances"}


def test_tools_call_returns_json_text(calculator):
    result = _call(
        calculator,
        "calculate_instance_savings",
        {"instances": [{"type": "t3.micro", "quantity": 3, "region": "us-east-1"}]},
    )
    assert not result.get("isError")
    payload = json.loads(result["content"][0]["text"])
    assert payload["comparison"]["aws_monthly_cost"] == pytest.approx(22.78)


def test_tools_call_validation_error(calculator):
    result = _call(
        calculator,
        "calculate_instance_savings",
        {"instances": [{"type": "t3.micro", "quantity": 0, "region": "us-east-1"}]},
    )
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Error: Quantity must be positive, got 0"


def test_tools_call_unknown_tool(calculator):
    result = _call(calculator, "x")
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Error: Unknown tool: x"


def test_tools_call_missing_name(calculator):
    response = process(_request("tools/call", {"arguments": {}}), calculator)
    assert response["error"]["code"] == INVALID_PARAMS


def test_tools_call_bad_arguments(calculator):
    response = process(_request("tools/call", {"name": "list_supported_instances", "arguments": [1]}), calculator)
    assert response["error"]["code"] == INVALID_PARAMS


def test_unknown_method(calculator):
    response = process(_request("resources/list"), calculator)
    assert response["error"]["code"] == METHOD_NOT_FOUND
    assert response["id"] == 1


def test_notifications_get_no_response(calculator):
    assert process({"jsonrpc": "2.0", "method": "notifications/initialized"}, calculator) is None


@pytest.mark.parametrize("message", [[], {"id": 1, "method": "ping"}, {"jsonrpc": "2.0", "id": 3}])
def test_invalid_requests(calculator, message):
    response = process(message, calculator)
    assert response["error"]["code"] == INVALID_REQUEST


def test_handle_line_parse_error(calculator):
    response = json.loads(handle_line("{oops", calculator))
    assert response["id"] is None
    assert response["error"]["code"] == PARSE_ERROR


def test_handle_line_blank(calculator):
    assert handle_line("   \n", calculator) is None


def test_serve_answers_each_request_line(calculator):
    stdin = io.StringIO(
        "\n".join(
            [
                json.dumps(_request("ping", request_id=1)),
                json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
                json.dumps(_request("tools/list", request_id=2)),
            ]
        )
        + "\n"
    )
    stdout = io.StringIO()
    serve(calculator, stdin, stdout)

    lines = stdout.getvalue().splitlines()
    assert [json.loads(line)["id"] for line in lines] == [1, 2]


def test_config_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("PRICING_DATA_PATH", str(tmp_path / "pricing.json"))
    monkeypatch.setenv("LOG_LEVEL", "debug")
    config = Config()
    config.reset()
    try:
        settings = config.get_settings()
        assert settings.pricing_data_path == str(tmp_path / "pricing.json")
        assert settings.log_level == "DEBUG"
    finally:
        config.reset()


def test_config_rejects_bad_log_level(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "LOUD")
    config = Config()
    config.reset()
    try:
        with pytest.raises(ValueError, match="LOG_LEVEL"):
            config.get_settings()
    finally:
        config.reset()
