"""
Error taxonomy shared by the tool-server manager, the conversation engine and the hosts.
"""


class CloudCostError(Exception):
    """Base class for all errors raised by the cloud cost clients."""


class StartupError(CloudCostError):
    """The tool server could not be spawned or did not complete the handshake."""


class NotConnectedError(CloudCostError):
    """An operation needing a live tool server was attempted while disconnected."""


class ConnectionLostError(CloudCostError):
    """The transport to the tool server went away while a request was in flight."""


class ProtocolError(CloudCostError):
    """The tool server answered a request with a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str) -> None:
        super().__init__(f"{method} failed: {message} (code {code})")
        self.method = method
        self.code = code


class InvocationError(CloudCostError):
    """A single tool call failed. Recovered inside the conversation."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.message = message


class UnexpectedExitError(CloudCostError):
    """The tool server process exited outside of a requested stop."""

    def __init__(self, returncode: int | None) -> None:
        super().__init__(
            f"MCP server exited unexpectedly with code {returncode}. "
            "The application must be restarted."
        )
        self.returncode = returncode


class TurnError(CloudCostError):
    """A conversation turn failed: model API error or runaway tool loop."""


class TurnInProgressError(CloudCostError):
    """send_message was called while another turn on the same engine was running."""


class InstallError(CloudCostError):
    """A tool server package could not be installed from GitHub."""
