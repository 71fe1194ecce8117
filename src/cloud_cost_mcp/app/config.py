from dataclasses import dataclass

from cloud_cost_shared.platform_manager import get_parameters

from cloud_cost_mcp.tools.pricing_loader import DEFAULT_PRICING_PATH

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class MCPSettings:
    """Tool server configuration settings loaded from the environment."""

    pricing_data_path: str
    log_level: str


class Config:
    """Singleton configuration manager for the cloud cost MCP server."""

    _instance = None
    _settings = None

    def __new__(cls) -> "Config":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def get_settings(self) -> MCPSettings:
        """Get server settings, loading from the environment if not already cached."""
        if self._settings is None:
            self._settings = self._load_settings()
        return self._settings

    def reset(self) -> None:
        """Drop cached settings so the next get_settings() re-reads the environment."""
        self._settings = None

    def _load_settings(self) -> MCPSettings:
        params = get_parameters(
            ["pricing_data_path", "log_level"],
            defaults={"pricing_data_path": str(DEFAULT_PRICING_PATH), "log_level": "INFO"},
        )
        settings = MCPSettings(
            pricing_data_path=params["pricing_data_path"] or "",
            log_level=(params["log_level"] or "").upper(),
        )
        self._validate_settings(settings)
        return settings

    def _validate_settings(self, settings: MCPSettings) -> None:
        if not settings.pricing_data_path:
            raise ValueError("Configuration value is invalid: PRICING_DATA_PATH")
        if settings.log_level not in VALID_LOG_LEVELS:
            raise ValueError("Configuration value is invalid: LOG_LEVEL")


# Create singleton instance
config = Config()


def get_settings() -> MCPSettings:
    """Get server settings from the singleton config."""
    return config.get_settings()
