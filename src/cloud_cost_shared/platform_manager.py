import logging
import os
import sys
from pathlib import Path
from typing import TextIO

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def create_logger(
    log_level: str = "INFO",
    logger_name: str = "cloud-cost",
    logs_dir: str | Path | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Create a logger that outputs to console and optionally to a file.

    Args:
        log_level (str): Logging level (e.g., "INFO", "DEBUG").
        logger_name (str): Name for the logger instance. Also used as the log file name.
        logs_dir (str | Path | None): Directory for log files. If None, the LOGS_DIR
            environment variable is used; when that is unset only console logging is set up.
        stream (TextIO | None): Console stream. Defaults to stderr so that processes
            speaking a protocol on stdout never get log lines mixed into it.

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    if not logger.handlers:  # Prevent handler duplication
        console_handler = logging.StreamHandler(stream or sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        logs_dir = logs_dir or os.getenv("LOGS_DIR")
        if logs_dir:
            try:
                logs_path = Path(logs_dir)
                logs_path.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(logs_path / f"{logger_name}.log")
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
            except OSError as e:
                # If file logging fails, just continue with console logging
                logger.warning(f"File logging disabled ({logs_dir}): {e}")

    logger.propagate = False
    return logger


def get_parameters(
    param_names: list[str] | str,
    base_path: str = "",
    *,
    defaults: dict[str, str] | None = None,
) -> dict[str, str | None]:
    """
    Retrieve configuration parameters from environment variables.

    Parameters are stored in the environment in uppercase, optionally prefixed with
    `base_path` (e.g. base_path "WEB_" maps "port" to WEB_PORT). The result dictionary
    is keyed by the lowercase parameter name.

    Args:
        param_names: Parameter name or list of names to retrieve.
        base_path: Prefix prepended to each environment variable name.
        defaults: Fallback values keyed by lowercase parameter name.

    Returns:
        dict[str, str | None]: Parameter values. Missing parameters without a default
            map to None.
    """
    if isinstance(param_names, str):
        param_names = [param_names]

    defaults = defaults or {}
    result: dict[str, str | None] = {}
    for param_name in param_names:
        key = param_name.lower()
        value = os.getenv(f"{base_path}{param_name}".upper())
        if value is None or value == "":
            value = defaults.get(key)
        result[key] = value
    return result
