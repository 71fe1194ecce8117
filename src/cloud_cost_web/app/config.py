import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from cloud_cost_shared.platform_manager import get_parameters

# Constants that don't change
DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = "3001"
DEFAULT_MAX_TOOL_ITERATIONS = "10"
DEFAULT_INSTALL_DIR = str(Path(tempfile.gettempdir()) / "mcp-installs")


@dataclass
class WebSettings:
    """Web backend configuration settings loaded from the environment."""

    # Core settings
    openai_api_key: str
    openai_model: str = DEFAULT_MODEL
    max_tool_iterations: int = int(DEFAULT_MAX_TOOL_ITERATIONS)

    # Server settings
    host: str = DEFAULT_HOST
    port: int = int(DEFAULT_PORT)
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Tool server settings
    mcp_install_dir: str = DEFAULT_INSTALL_DIR

    # Logging
    log_level: str = "INFO"
    logs_dir: str | None = None


class Config:
    """Singleton configuration manager for the web backend."""

    _instance = None
    _settings = None

    def __new__(cls) -> "Config":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def get_settings(self) -> WebSettings:
        """Get web settings, loading from the environment if not already cached."""
        if self._settings is None:
            self._settings = self._load_settings()
        return self._settings

    def reset(self) -> None:
        """Drop cached settings so the next get_settings() re-reads the environment."""
        self._settings = None

    def _load_settings(self) -> WebSettings:
        secrets = get_parameters(["openai_api_key"])
        params = get_parameters(
            [
                "openai_model",
                "max_tool_iterations",
                "host",
                "port",
                "cors_origins",
                "mcp_install_dir",
                "log_level",
                "logs_dir",
            ],
            defaults={
                "openai_model": DEFAULT_MODEL,
                "max_tool_iterations": DEFAULT_MAX_TOOL_ITERATIONS,
                "host": DEFAULT_HOST,
                "port": DEFAULT_PORT,
                "cors_origins": "*",
                "mcp_install_dir": DEFAULT_INSTALL_DIR,
                "log_level": "INFO",
            },
        )

        # Integers are validated below; unparsable values become 0 and are rejected
        integers: dict[str, int] = {}
        for name in ("max_tool_iterations", "port"):
            try:
                integers[name] = int(params[name] or "")
            except ValueError:
                integers[name] = 0

        cors_origins = [o.strip() for o in (params["cors_origins"] or "").split(",") if o.strip()]

        settings = WebSettings(
            openai_api_key=secrets["openai_api_key"] or "",
            openai_model=params["openai_model"] or "",
            max_tool_iterations=integers["max_tool_iterations"],
            host=params["host"] or "",
            port=integers["port"],
            cors_origins=cors_origins,
            mcp_install_dir=params["mcp_install_dir"] or "",
            log_level=(params["log_level"] or "").upper(),
            logs_dir=params["logs_dir"],
        )

        self._validate_settings(settings)
        return settings

    def _validate_settings(self, settings: WebSettings) -> None:
        """Validate that all required settings have valid values."""
        required_fields = ["openai_api_key", "openai_model", "host", "mcp_install_dir", "log_level"]
        for field_name in required_fields:
            if not getattr(settings, field_name):
                raise ValueError(f"Configuration value is invalid: {field_name.upper()}")

        if settings.max_tool_iterations < 1:
            raise ValueError("Configuration value is invalid: MAX_TOOL_ITERATIONS")
        if not 0 < settings.port < 65536:
            raise ValueError("Configuration value is invalid: PORT")


# Create singleton instance
config = Config()


def get_settings() -> WebSettings:
    """Get web settings from the singleton config."""
    return config.get_settings()
