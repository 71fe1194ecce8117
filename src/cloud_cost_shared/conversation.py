"""
Conversation Engine

Owns the message history of one conversation and drives the bounded tool-calling loop:
the model is asked for a reply, every tool call it requests is executed on the tool
server in model order, the results are fed back, and the loop repeats until the model
answers with plain text.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from cloud_cost_shared.data_models import (
    ContentBlock,
    Message,
    ModelResponse,
    TextBlock,
    ToolDescriptor,
    ToolInvocation,
    ToolResult,
    ToolUseBlock,
)
from cloud_cost_shared.events import EventHub
from cloud_cost_shared.exceptions import (
    InvocationError,
    NotConnectedError,
    TurnError,
    TurnInProgressError,
)
from cloud_cost_shared.platform_manager import create_logger

DEFAULT_MAX_TOOL_ITERATIONS = 10


class LanguageModel(Protocol):
    async def generate(
        self,
        messages: list[Message],
        instructions: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        name_map: dict[str, str] | None = None,
    ) -> ModelResponse: ...


class ToolExecutor(Protocol):
    def is_connected(self) -> bool: ...

    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any: ...


def _make_name_maps(mcp_tool_names: list[str]) -> tuple[dict[str, str], dict[str, str]]:
    """
    Returns (mcp_to_llm, llm_to_mcp).
    LLM-safe tool names allow only [A-Za-z0-9_-], so we convert '.' -> '_'.
    Handles collisions deterministically by appending __2, __3, ...
    """
    mcp_to_llm: dict[str, str] = {}
    llm_to_mcp: dict[str, str] = {}
    for mcp in mcp_tool_names:
        base = mcp.replace(".", "_")
        candidate = base
        i = 2
        while candidate in llm_to_mcp and llm_to_mcp[candidate] != mcp:
            candidate = f"{base}__{i}"
            i += 1
        mcp_to_llm[mcp] = candidate
        llm_to_mcp[candidate] = mcp
    return mcp_to_llm, llm_to_mcp


def _openai_tools_from_mcp(
    tools: list[ToolDescriptor],
) -> tuple[list[dict[str, Any]], dict[str, str], dict[str, str]]:
    """
    Builds OpenAI Responses-API function tools from live MCP discovery.

    Returns:
      (tools, mcp_to_llm, llm_to_mcp)
        tools      -> list[dict] suitable for `tools=` in client.responses.create(...)
        mcp_to_llm -> map original MCP name -> OpenAI-safe name
        llm_to_mcp -> reverse map (OpenAI-safe -> MCP)
    """
    mcp_to_llm, llm_to_mcp = _make_name_maps([t.name for t in tools])

    oai_tools: list[dict[str, Any]] = []
    for tool in tools:
        oai_tools.append({
            "type": "function",
            "name": mcp_to_llm[tool.name],  # OpenAI-safe
            "description": tool.description,
            "parameters": tool.input_schema,  # JSON Schema, passed through untouched
            "strict": False,
        })
    return oai_tools, mcp_to_llm, llm_to_mcp


class ConversationEngine:
    """
    One conversation against one language model and one tool server.

    Events: "tool_call" (tool name, arguments) emitted before each invocation.
    """

    def __init__(
        self,
        llm: LanguageModel,
        tool_server: ToolExecutor,
        system_prompt: str,
        *,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_tool_iterations < 1:
            raise ValueError(f"max_tool_iterations must be at least 1, got {max_tool_iterations}")

        self._llm = llm
        self._tool_server = tool_server
        self._system_prompt = system_prompt
        self._max_tool_iterations = max_tool_iterations
        self._logger = logger or create_logger(logger_name="conversation")

        self._history: list[Message] = []
        self._processing = False
        self._events = EventHub("tool_call", logger=self._logger)

        self._tools: list[dict[str, Any]] | None = None
        self._mcp_to_llm: dict[str, str] = {}
        self._llm_to_mcp: dict[str, str] = {}

        # Tool sets change when the server (re)connects
        subscribe = getattr(tool_server, "subscribe", None)
        self._unsubscribe = subscribe("connected", self.invalidate_tools) if subscribe else None

    @property
    def is_processing(self) -> bool:
        return self._processing

    def subscribe(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        return self._events.subscribe(event, callback)

    def get_history(self) -> list[Message]:
        return list(self._history)

    def reset(self) -> None:
        """Clear the conversation history. The tool server is left untouched."""
        self._history = []
        self._logger.info("Conversation history cleared")

    def invalidate_tools(self) -> None:
        """Mark the cached tool declarations stale; the next turn re-lists them."""
        self._tools = None

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def send_message(self, user_text: str) -> str:
        """
        Run one turn: append the user message, loop model <-> tools, return the answer.

        Raises:
            TurnInProgressError: If another turn on this engine is still running.
            NotConnectedError: If the tool server is not connected.
            ConnectionLostError: If the tool server went away during a tool call.
            TurnError: If the model call fails or the tool loop exceeds its bound.
        """
        if self._processing:
            raise TurnInProgressError("A message is already being processed")
        if not self._tool_server.is_connected():
            raise NotConnectedError("MCP server is not connected")

        self._processing = True
        try:
            self._history.append(Message(role="user", content=user_text))
            tools = await self._get_tools()

            rounds = 0
            while True:
                response = await self._generate(tools)
                if not response.tool_calls:
                    break
                if rounds >= self._max_tool_iterations:
                    raise TurnError(
                        f"Tool loop exceeded {self._max_tool_iterations} iterations without a final answer"
                    )
                rounds += 1
                await self._run_tool_round(response)

            self._history.append(Message(role="assistant", content=response.text))
            return response.text
        finally:
            self._processing = False

    async def _get_tools(self) -> list[dict[str, Any]]:
        if self._tools is None:
            descriptors = await self._tool_server.list_tools()
            self._tools, self._mcp_to_llm, self._llm_to_mcp = _openai_tools_from_mcp(descriptors)
            self._logger.info(f"Loaded {len(descriptors)} tools: {', '.join(t.name for t in descriptors)}")
        return self._tools

    async def _generate(self, tools: list[dict[str, Any]]) -> ModelResponse:
        try:
            response = await self._llm.generate(
                list(self._history),
                instructions=self._system_prompt,
                tools=tools,
                name_map=self._mcp_to_llm,
            )
        except RuntimeError as e:
            self._logger.error(f"Language model request failed: {e}")
            raise TurnError(f"Language model request failed: {e}") from e

        if response.usage:
            self._logger.debug(f"Model usage: {response.usage}")
        return response

    async def _run_tool_round(self, response: ModelResponse) -> None:
        calls = [
            ToolInvocation(
                id=call.id,
                name=self._llm_to_mcp.get(call.name, call.name),
                arguments=call.arguments,
                arguments_error=call.arguments_error,
            )
            for call in response.tool_calls
        ]

        results = []
        for call in calls:
            self._logger.info(f"[Calling tool: {call.name}]")
            self._events.emit("tool_call", call.name, call.arguments)
            results.append(await self._invoke(call))

        assistant_blocks: list[ContentBlock] = []
        if response.text:
            assistant_blocks.append(TextBlock(text=response.text))
        assistant_blocks.extend(
            ToolUseBlock(id=call.id, name=call.name, input=call.arguments) for call in calls
        )
        self._history.append(Message(role="assistant", content=assistant_blocks))
        self._history.append(Message(role="user", content=[r.to_block() for r in results]))

    async def _invoke(self, call: ToolInvocation) -> ToolResult:
        if call.arguments_error:
            return ToolResult.failure(call.id, call.arguments_error)
        if call.name not in self._mcp_to_llm:
            return ToolResult.failure(call.id, f"Unknown tool: {call.name}")

        try:
            payload = await self._tool_server.call_tool(call.name, call.arguments)
        except InvocationError as e:
            self._logger.warning(f"Tool {call.name} failed: {e.message}")
            return ToolResult.failure(call.id, e.message)
        return ToolResult.success(call.id, payload)
