import tempfile
from dataclasses import dataclass
from pathlib import Path

from cloud_cost_shared.data_models import InstallConfig
from cloud_cost_shared.platform_manager import get_parameters

# Constants that don't change
DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_MAX_TOOL_ITERATIONS = "10"
DEFAULT_INSTALL_DIR = str(Path(tempfile.gettempdir()) / "mcp-installs")

# Tool server installed by --remote
REMOTE_SERVER = InstallConfig(
    owner="scorzo",
    repo="cloud-cost-calculator-mcp",
    branch="main",
    subdirectory="mcp-server",
)


@dataclass
class AgentSettings:
    """Terminal client configuration settings loaded from the environment."""

    # Core settings
    openai_api_key: str
    openai_model: str
    max_tool_iterations: int

    # Tool server settings
    mcp_install_dir: str

    # Logging
    log_level: str

    # Optional settings
    mcp_server_command: str | None = None
    mcp_server_path: str | None = None
    logs_dir: str | None = None


class Config:
    """Singleton configuration manager for the terminal client."""

    _instance = None
    _settings = None

    def __new__(cls) -> "Config":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def get_settings(self) -> AgentSettings:
        """Get agent settings, loading from the environment if not already cached."""
        if self._settings is None:
            self._settings = self._load_settings()
        return self._settings

    def reset(self) -> None:
        """Drop cached settings so the next get_settings() re-reads the environment."""
        self._settings = None

    def _load_settings(self) -> AgentSettings:
        # Load secrets
        secrets = get_parameters(["openai_api_key"])

        # Load parameters, with defaults
        params = get_parameters(
            [
                "openai_model",
                "max_tool_iterations",
                "mcp_install_dir",
                "mcp_server_command",
                "mcp_server_path",
                "log_level",
                "logs_dir",
            ],
            defaults={
                "openai_model": DEFAULT_MODEL,
                "max_tool_iterations": DEFAULT_MAX_TOOL_ITERATIONS,
                "mcp_install_dir": DEFAULT_INSTALL_DIR,
                "log_level": "INFO",
            },
        )

        try:
            max_tool_iterations = int(params["max_tool_iterations"] or "")
        except ValueError:
            max_tool_iterations = 0  # rejected by _validate_settings

        settings = AgentSettings(
            openai_api_key=secrets["openai_api_key"] or "",
            openai_model=params["openai_model"] or "",
            max_tool_iterations=max_tool_iterations,
            mcp_install_dir=params["mcp_install_dir"] or "",
            log_level=(params["log_level"] or "").upper(),
            mcp_server_command=params["mcp_server_command"],
            mcp_server_path=params["mcp_server_path"],
            logs_dir=params["logs_dir"],
        )

        # Validate settings
        self._validate_settings(settings)

        return settings

    def _validate_settings(self, settings: AgentSettings) -> None:
        """Validate that all required settings have valid values."""
        required_fields = ["openai_api_key", "openai_model", "mcp_install_dir", "log_level"]
        for field in required_fields:
            if not getattr(settings, field):
                raise ValueError(f"Configuration value is invalid: {field.upper()}")

        if settings.max_tool_iterations < 1:
            raise ValueError("Configuration value is invalid: MAX_TOOL_ITERATIONS")


# Create singleton instance
config = Config()


# Convenience functions
def get_settings() -> AgentSettings:
    """Get agent settings from the singleton config."""
    return config.get_settings()
