from mcp.types import Implementation, InitializeResult, ServerCapabilities, ToolsCapability

from cloud_cost_mcp import __version__

SERVER_NAME = "cloud-cost-calculator"


def manifest(protocol_version: str) -> InitializeResult:
    return InitializeResult(
        protocolVersion=protocol_version,
        capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
        serverInfo=Implementation(name=SERVER_NAME, version=__version__),
        instructions="Compares AWS EC2 instance costs with alternative cloud pricing.",
    )
