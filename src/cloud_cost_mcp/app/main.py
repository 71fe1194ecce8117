import json
import sys
from typing import Any, TextIO

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    CallToolResult,
    ListToolsResult,
    TextContent,
)
from pydantic import BaseModel

from cloud_cost_mcp.app.config import get_settings
from cloud_cost_mcp.server.manifest import manifest
from cloud_cost_mcp.server.router import UnknownToolError, call_tool, list_tools
from cloud_cost_mcp.tools.calculator import CostCalculator, ToolInputError
from cloud_cost_mcp.tools.pricing_loader import PricingDataError, PricingTable
from cloud_cost_shared.platform_manager import create_logger

# stdout carries the protocol, so the logger writes to stderr only
logger = create_logger(logger_name="cloud-cost-mcp", stream=sys.stderr)


def create_response(request_id: Any, result: dict[str, Any] | BaseModel) -> dict[str, Any]:
    """Create a JSON-RPC success response."""
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def create_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Create a JSON-RPC error response. `request_id` is None when it could not be read."""
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _tool_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


def handle_tool_call(calculator: CostCalculator, name: str, args: dict[str, Any]) -> CallToolResult:
    """
    Run a tool and wrap the outcome in a CallToolResult.

    Failures never escape: they become an `isError` result whose text starts with "Error:".
    """
    try:
        result = call_tool(calculator, name, args)
    except (ToolInputError, UnknownToolError) as e:
        logger.warning(f"Tool {name} rejected request: {e}")
        return _tool_result(f"Error: {e}", is_error=True)
    except Exception as e:
        logger.error(f"Tool {name} failed: {e}", exc_info=True)
        return _tool_result(f"Error: {e}", is_error=True)

    return _tool_result(json.dumps(result, indent=2))


def process(message: Any, calculator: CostCalculator) -> dict[str, Any] | None:
    """
    Process one decoded JSON-RPC message.

    Returns the response object, or None for notifications (which never get one).
    """
    if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
        return create_error(None, INVALID_REQUEST, "Invalid Request")

    method = message.get("method")
    if not isinstance(method, str):
        return create_error(message.get("id"), INVALID_REQUEST, "Invalid Request")

    if "id" not in message:
        logger.debug(f"Notification received: {method}")
        return None

    request_id = message["id"]
    params = message.get("params") or {}
    if not isinstance(params, dict):
        return create_error(request_id, INVALID_PARAMS, "Invalid params")

    logger.debug(f"Processing request: {method}")

    if method == "initialize":
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        client = (params.get("clientInfo") or {}).get("name", "unknown")
        logger.info(f"Initialize from {client} (protocol {version})")
        return create_response(request_id, manifest(version))

    elif method == "ping":
        return create_response(request_id, {})

    elif method == "tools/list":
        return create_response(request_id, ListToolsResult(tools=list_tools()))

    elif method == "tools/call":
        name = params.get("name")
        if not name or not isinstance(name, str):
            return create_error(request_id, INVALID_PARAMS, "Missing tool name")

        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            return create_error(request_id, INVALID_PARAMS, "Invalid arguments")

        logger.info(f"Tools call received: {name}")
        return create_response(request_id, handle_tool_call(calculator, name, args))

    # Default case for unmatched methods
    return create_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")


def handle_line(line: str, calculator: CostCalculator) -> str | None:
    """Decode one input line, process it, and encode the response line (if any)."""
    line = line.strip()
    if not line:
        return None

    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        logger.error(f"Parse error: {line[:100]}")
        return json.dumps(create_error(None, PARSE_ERROR, "Parse error"))

    try:
        response = process(message, calculator)
    except Exception as e:
        logger.error(f"Unhandled error processing message: {e}", exc_info=True)
        request_id = message.get("id") if isinstance(message, dict) else None
        response = create_error(request_id, INTERNAL_ERROR, "Internal error")

    return json.dumps(response) if response is not None else None


def serve(calculator: CostCalculator, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
    """Read newline-delimited JSON-RPC from stdin until EOF, answering on stdout."""
    for line in stdin:
        output = handle_line(line, calculator)
        if output is not None:
            stdout.write(output + "\n")
            stdout.flush()


def main() -> None:
    try:
        settings = get_settings()
    except ValueError as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)
    logger.setLevel(settings.log_level)

    try:
        table = PricingTable.load(settings.pricing_data_path)
    except PricingDataError as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)

    calculator = CostCalculator(table)
    logger.info("Cloud Cost Calculator MCP Server running on stdio")
    logger.info(f"Loaded {len(table.list_supported_instances())} instance types")

    try:
        serve(calculator)
    except KeyboardInterrupt:
        pass
    logger.info("stdin closed, shutting down")


if __name__ == "__main__":
    main()
