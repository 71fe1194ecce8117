from typing import Any

from mcp.types import Tool

from cloud_cost_mcp.server.schemas import LIST
from cloud_cost_mcp.tools.calculator import CostCalculator


class UnknownToolError(LookupError):
    pass


def list_tools() -> list[Tool]:
    return [
        Tool(name=v["name"], description=v["description"], inputSchema=v["input_schema"])
        for v in LIST.values()
    ]


def call_tool(calculator: CostCalculator, name: str, args: dict[str, Any]) -> Any:
    if name == "calculate_instance_savings":
        return calculator.calculate_instance_savings(args.get("instances"))
    if name == "list_supported_instances":
        return calculator.list_supported_instances()
    raise UnknownToolError(f"Unknown tool: {name}")
