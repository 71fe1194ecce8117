import asyncio
import json
import random
import time
from email.utils import parsedate_to_datetime
from typing import Any, Protocol, cast

import openai
from openai import AsyncOpenAI

from cloud_cost_shared.data_models import (
    Message,
    ModelResponse,
    TextBlock,
    ToolInvocation,
    ToolResultBlock,
    ToolUseBlock,
)


# Define response type directly because pyright is not correctly understanding the Responses API
class Response(Protocol):
    output_text: str | None
    output: list[Any]
    usage: Any
    model: str
    error: Any | None
    incomplete_details: Any | None


# Default configuration constants for GPT-5 and o-series reasoning models
DEFAULT_MAX_OUTPUT_TOKENS = 4096
DEFAULT_REASONING_EFFORT = "low"
DEFAULT_VERBOSITY = "low"
DEFAULT_TOOL_CHOICE = "auto"
# Shared configuration constants
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0
MAX_RETRY_SLEEP = 30.0

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    TimeoutError,  # local/python timeout safeguard
    openai.RateLimitError,
    openai.APIConnectionError,  # includes APITimeoutError
    openai.InternalServerError,
)


def _retry_sleep_seconds_from_headers(err: Exception) -> float | None:
    """
    Inspect the exception for rate-limit/Retry-After headers and return
    an absolute number of seconds to sleep. Returns None if no guidance.
    """
    resp = getattr(err, "response", None)
    headers = getattr(resp, "headers", None) or {}
    if not headers:
        return None

    def get_header(name: str) -> str | None:
        return headers.get(name) or headers.get(name.lower())

    # 1) Honor Retry-After if present (seconds OR HTTP-date)
    retry_after = get_header("Retry-After")
    if retry_after:
        retry_after = retry_after.strip()
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass
        try:
            dt = parsedate_to_datetime(retry_after)
            return max(0.0, dt.timestamp() - time.time())
        except (TypeError, ValueError):
            pass

    # 2) Use the later of the reset timestamps (epoch seconds)
    resets: list[float] = []
    for key in ("x-ratelimit-reset-requests", "x-ratelimit-reset-tokens"):
        header_value = get_header(key)
        if not header_value:
            continue
        try:
            resets.append(float(header_value) - time.time())
        except ValueError:
            continue

    if resets:
        return max(0.0, max(resets))

    return None


def _backoff_seconds(err: Exception, attempt: int, retry_delay: float) -> float:
    guided = _retry_sleep_seconds_from_headers(err)
    if guided is not None:
        # Add a tiny jitter to avoid thundering herd
        return min(guided, MAX_RETRY_SLEEP) + random.uniform(0.1, 0.4)
    # Fallback to exponential backoff with jitter
    return min(retry_delay * (2**attempt), MAX_RETRY_SLEEP) + random.uniform(0, 0.4)


def to_input_items(
    messages: list[Message], name_map: dict[str, str] | None = None
) -> list[dict[str, Any]]:
    """
    Convert conversation history into Responses-API input items.

    Text content becomes role messages, ToolUseBlocks become `function_call` items and
    ToolResultBlocks become `function_call_output` items echoing the same call_id.

    Args:
        messages: Conversation history, oldest first.
        name_map: Optional map from tool name to the name declared to the model.
    """
    name_map = name_map or {}
    items: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message.content, str):
            items.append({"role": message.role, "content": message.content})
            continue

        for block in message.content:
            if isinstance(block, TextBlock):
                if block.text:
                    items.append({"role": message.role, "content": block.text})
            elif isinstance(block, ToolUseBlock):
                items.append({
                    "type": "function_call",
                    "call_id": block.id,
                    "name": name_map.get(block.name, block.name),
                    "arguments": json.dumps(block.input),
                })
            elif isinstance(block, ToolResultBlock):
                items.append({
                    "type": "function_call_output",
                    "call_id": block.tool_use_id,
                    "output": block.content,
                })
    return items


def parse_response(resp: Any) -> ModelResponse:
    """
    Extract text, tool calls, usage and model version from a Responses-API response.

    Tool call arguments that are not a JSON object are kept as an empty dict with
    `arguments_error` set, so the caller can report the problem back to the model.
    """
    tool_calls: list[ToolInvocation] = []
    text_parts: list[str] = []

    for item in getattr(resp, "output", None) or []:
        item_type = getattr(item, "type", "")
        if item_type == "function_call":
            raw_args = getattr(item, "arguments", "") or "{}"
            arguments: dict[str, Any] = {}
            arguments_error = None
            try:
                parsed = json.loads(raw_args)
                if isinstance(parsed, dict):
                    arguments = cast(dict[str, Any], parsed)
                else:
                    arguments_error = "Tool arguments must be a JSON object"
            except json.JSONDecodeError as e:
                arguments_error = f"Invalid JSON in tool arguments: {e}"
            tool_calls.append(
                ToolInvocation(
                    id=getattr(item, "call_id", None) or getattr(item, "id", ""),
                    name=getattr(item, "name", ""),
                    arguments=arguments,
                    arguments_error=arguments_error,
                )
            )
        elif item_type == "message":
            for part in getattr(item, "content", None) or []:
                if getattr(part, "type", "") == "output_text":
                    text_parts.append(getattr(part, "text", ""))

    text = "".join(text_parts) or (getattr(resp, "output_text", None) or "")

    # Extract usage information
    u = getattr(resp, "usage", None)
    reasoning_tokens = getattr(getattr(u, "output_tokens_details", None), "reasoning_tokens", None)
    usage = {
        "input_tokens": getattr(u, "input_tokens", 0),
        "output_tokens": getattr(u, "output_tokens", 0),
        "total_tokens": getattr(u, "total_tokens", 0),
        "reasoning_tokens": reasoning_tokens,
    }

    return ModelResponse(
        text=text,
        tool_calls=tool_calls,
        usage=usage,
        model_version=getattr(resp, "model", None),
    )


class OpenAIChat:
    """
    An async client for OpenAI's Responses API with automatic retry logic.

    Supports GPT-5, o-series and GPT-4 family models with exponential backoff retry
    for transient errors.
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """
        Initialize the OpenAI chat client.

        Args:
            model: The OpenAI model to use (e.g., 'gpt-5-mini')
            api_key: OpenAI API key. Ignored when `client` is given.
            client: Pre-built AsyncOpenAI client (tests pass a fake here).

        Raises:
            ValueError: If the API key is missing or the model is not supported
        """
        if client is None:
            if not api_key:
                raise ValueError("OPENAI_API_KEY not found in environment")
            client = AsyncOpenAI(api_key=api_key)

        self.client = client
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.max_attempts = max(1, max_attempts)
        self._params_for_model(model)  # fail fast on unsupported models

    def _params_for_model(self, model: str, **kwargs: Any) -> dict[str, Any]:
        """
        Return default parameters based on model family.

        Raises:
            ValueError: If the model is not supported
        """
        parameters: dict[str, Any] = {
            "max_output_tokens": kwargs.get("max_output_tokens", self.max_output_tokens),
        }
        tools = kwargs.get("tools") or []
        if tools:
            parameters["tools"] = tools
            parameters["tool_choice"] = kwargs.get("tool_choice", DEFAULT_TOOL_CHOICE)

        if model.startswith("gpt-5"):
            parameters["text"] = {"verbosity": kwargs.get("verbosity", DEFAULT_VERBOSITY)}
            parameters["reasoning"] = {
                "effort": kwargs.get("reasoning_effort", DEFAULT_REASONING_EFFORT)
            }
        elif model.startswith(("o1", "o3", "o4")):
            parameters["reasoning"] = {
                "effort": kwargs.get("reasoning_effort", DEFAULT_REASONING_EFFORT)
            }
        elif model.startswith("gpt-4"):
            if "temperature" in kwargs:
                parameters["temperature"] = kwargs["temperature"]
        else:
            raise ValueError(f"Unsupported model: {model}")
        return parameters

    async def generate(
        self,
        messages: list[Message],
        instructions: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        name_map: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> ModelResponse:
        """
        Generate a response from the OpenAI model with retry logic.

        Args:
            messages: Conversation history to send to the model
            instructions: System prompt
            tools: Responses-API function tool declarations
            name_map: Tool name -> declared tool name, applied to history tool calls
            **kwargs: Parameter overrides (reasoning_effort, verbosity, ...)

        Raises:
            RuntimeError: If the model fails after all retry attempts, or with a
                non-retryable error
        """
        input_items = to_input_items(messages, name_map)
        request_params = self._params_for_model(self.model, tools=tools, **kwargs)
        if instructions:
            request_params["instructions"] = instructions

        retry_delay = DEFAULT_RETRY_DELAY
        last_error: Exception | None = None

        for attempt in range(self.max_attempts):
            try:
                resp = await self.client.responses.create(
                    model=self.model,
                    input=cast(Any, input_items),
                    **request_params,
                )
                return self._handle_response(cast(Response, resp))

            except RETRYABLE_ERRORS as e:  # Transient error occurred -- retry
                last_error = e
                if attempt == self.max_attempts - 1:  # Break after maximum attempts
                    break
                await asyncio.sleep(max(0.0, _backoff_seconds(e, attempt, retry_delay)))

            except RuntimeError:
                raise

            except Exception as e:  # Non-retryable
                raise RuntimeError(f"Fatal error calling {self.model}: {e}") from e

        raise RuntimeError(
            f"LLM call failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    def _handle_response(self, resp: Response) -> ModelResponse:
        error = getattr(resp, "error", None)
        if error:
            message = getattr(error, "message", None) or str(error)
            raise RuntimeError(f"{self.model} returned an error: {message}")

        response = parse_response(resp)
        if not response.text and not response.tool_calls:
            details = getattr(resp, "incomplete_details", None)
            reason = getattr(details, "reason", None)
            if reason:
                raise RuntimeError(f"{self.model} response incomplete: {reason}")
        return response
