import logging
from typing import Any

from cloud_cost_shared.data_models import Message


def log_tool_call(name: str, arguments: dict[str, Any], logger: logging.Logger) -> None:
    logger.info(f"Tool requested by model: {name}")
    logger.debug(f"Arguments: {arguments}")


def log_turn(history: list[Message], logger: logging.Logger) -> None:
    tool_rounds = sum(1 for m in history if m.role == "assistant" and not isinstance(m.content, str))
    logger.info(f"Turn complete: {len(history)} messages in history, {tool_rounds} tool rounds")
