import json
from typing import Any

from cloud_cost_shared.data_models import InstallConfig
from cloud_cost_shared.exceptions import CloudCostError, NotConnectedError
from cloud_cost_shared.platform_manager import create_logger

from cloud_cost_web.services.connection_service import ConnectInProgressError, ConnectionService

logger = create_logger(logger_name="cloud-cost-web", log_level="INFO")

REQUIRED_CONNECT_FIELDS = ("owner", "repo", "branch")


def create_response(
    status_code: int, body: str, content_type: str = "text/plain"
) -> dict[str, Any]:
    """
    Create a standard HTTP response.
    """
    return {
        "statusCode": status_code,
        "body": body,
        "headers": {"Content-Type": content_type},
        "isBase64Encoded": False,
    }


def create_json_response(status_code: int, data: dict[str, Any]) -> dict[str, Any]:
    return create_response(status_code, json.dumps(data), "application/json")


def _parse_body(event: dict[str, Any]) -> dict[str, Any] | None:
    """Parse the JSON body of an event. Returns None when it is not a JSON object."""
    body_raw = event.get("body") or b"{}"
    try:
        if isinstance(body_raw, bytes):
            body_json = json.loads(body_raw.decode("utf-8"))
        else:
            body_json = json.loads(body_raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body_json if isinstance(body_json, dict) else None


def _install_config(body: dict[str, Any]) -> InstallConfig | None:
    if not all(isinstance(body.get(name), str) and body[name] for name in REQUIRED_CONNECT_FIELDS):
        return None
    subdirectory = body.get("subdirectory") or body.get("packagePath")
    return InstallConfig(
        owner=body["owner"],
        repo=body["repo"],
        branch=body["branch"],
        subdirectory=subdirectory if isinstance(subdirectory, str) else None,
    )


async def connect(event: dict[str, Any], service: ConnectionService) -> dict[str, Any]:
    body = _parse_body(event)
    config = _install_config(body) if body is not None else None
    if config is None:
        return create_json_response(
            400,
            {"status": "error", "message": "Missing required fields: " + ", ".join(REQUIRED_CONNECT_FIELDS)},
        )

    try:
        result = await service.connect(config)
    except ConnectInProgressError as e:
        logger.warning(f"Connect rejected: {e}")
        return create_json_response(409, {"status": "error", "message": str(e)})
    except CloudCostError as e:
        logger.error(f"Connect failed: {e}")
        return create_json_response(500, {**service.state.to_dict(), "status": "error", "message": str(e)})

    return create_json_response(200, result)


async def list_tools(service: ConnectionService) -> dict[str, Any]:
    try:
        tools = await service.list_tools()
    except NotConnectedError:
        return create_json_response(503, {"error": "MCP server not connected", "tools": []})
    except CloudCostError as e:
        logger.error(f"Error listing tools: {e}")
        return create_json_response(500, {"error": str(e), "tools": []})
    return create_json_response(200, {"tools": [t.to_dict() for t in tools]})


async def process(event: dict[str, Any], service: ConnectionService) -> dict[str, Any]:
    """
    Process an incoming HTTP event for the administrative routes.
    """
    http = event.get("requestContext", {}).get("http", {})
    route_key = f"{http.get('method', '').upper()} {http.get('path', '')}"
    logger.debug(f"Route: {route_key}")

    if route_key == "POST /api/mcp/connect":
        return await connect(event, service)

    if route_key == "POST /api/mcp/disconnect":
        result = await service.disconnect()
        logger.info("Disconnected MCP server")
        return create_json_response(200, {**result, "message": "Disconnected"})

    if route_key == "GET /api/mcp/status":
        return create_json_response(200, await service.status())

    if route_key == "GET /api/mcp/tools":
        return await list_tools(service)

    return create_response(404, "Not Found")
