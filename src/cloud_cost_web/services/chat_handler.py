"""
WebSocket Chat Handler

One ChatSession per WebSocket connection, each with its own ConversationEngine.

Client -> server frames:
    {"type": "message", "content": "..."}
Server -> client frames:
    {"type": "message", "role": "user" | "assistant", "content": "...", "timestamp": "..."}
    {"type": "tool_call", "tool_name": "..."}
    {"type": "error", "message": "..."}
    {"type": "status", "status": "connected" | "disconnected", "message": "..."}
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from cloud_cost_shared.conversation import ConversationEngine
from cloud_cost_shared.exceptions import (
    CloudCostError,
    ConnectionLostError,
    NotConnectedError,
    UnexpectedExitError,
)
from cloud_cost_shared.mcp_lifecycle import ToolServerManager

EngineFactory = Callable[[], ConversationEngine]

NOT_CONNECTED_MESSAGE = "MCP server not connected. Please connect to an MCP server first."
FATAL_ERRORS = (NotConnectedError, ConnectionLostError, UnexpectedExitError)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatSession:
    def __init__(
        self,
        websocket: WebSocket,
        manager: ToolServerManager,
        engine_factory: EngineFactory,
        logger: logging.Logger,
    ) -> None:
        self.websocket = websocket
        self.manager = manager
        self.engine_factory = engine_factory
        self.logger = logger
        self.engine: ConversationEngine | None = None

        self._turn: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._closed = False
        self._unsubscribers = [
            manager.subscribe("unexpected_exit", self._on_unexpected_exit),
            manager.subscribe("disconnected", self._on_disconnected),
            manager.subscribe("connected", self._on_connected),
        ]

    async def run(self) -> None:
        """Receive frames until the client goes away."""
        self.logger.info("Client connected to chat")
        try:
            while True:
                data = await self.websocket.receive_text()
                await self.handle_frame(data)
        except WebSocketDisconnect:
            self.logger.info("Client disconnected from chat")
        finally:
            await self.close()

    async def handle_frame(self, data: str) -> None:
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            await self.send({"type": "error", "message": "Invalid JSON"})
            return

        if not isinstance(frame, dict):
            await self.send({"type": "error", "message": "Invalid message format"})
            return

        kind = frame.get("type")
        if kind != "message":
            await self.send({"type": "error", "message": f"Unknown message type: {kind}"})
            return

        content = frame.get("content")
        if not isinstance(content, str) or not content.strip():
            await self.send({"type": "error", "message": "Message content must be a non-empty string"})
            return

        await self.handle_message(content)

    async def handle_message(self, content: str) -> None:
        if not self.manager.is_connected():
            await self.send({"type": "error", "message": NOT_CONNECTED_MESSAGE})
            return

        if self._turn is not None and not self._turn.done():
            await self.send({"type": "error", "message": "A message is already being processed"})
            return

        if self.engine is None:
            self.engine = self.engine_factory()
            self.engine.subscribe("tool_call", self._on_tool_call)

        # Echo user message back
        await self.send({"type": "message", "role": "user", "content": content, "timestamp": _timestamp()})

        # Run the turn in the background so the socket keeps reading frames
        self._turn = asyncio.create_task(self._run_turn(self.engine, content))

    async def _run_turn(self, engine: ConversationEngine, content: str) -> None:
        try:
            response = await engine.send_message(content)
        except FATAL_ERRORS as e:
            self.logger.error(f"MCP error during turn: {e}")
            await self.send({"type": "error", "message": str(e)})
            await self.send({"type": "status", "status": "disconnected", "message": str(e)})
            return
        except CloudCostError as e:
            self.logger.error(f"Turn failed: {e}")
            await self.send({"type": "error", "message": str(e)})
            return
        except Exception as e:
            self.logger.error(f"Unexpected error during turn: {e}", exc_info=True)
            await self.send({"type": "error", "message": "Internal Server Error"})
            return

        # Tool call frames go out before the answer
        await self._flush()
        await self.send({"type": "message", "role": "assistant", "content": response, "timestamp": _timestamp()})

    async def wait_idle(self) -> None:
        """Wait for the running turn, if any. Used by tests and shutdown."""
        if self._turn is not None:
            await asyncio.gather(self._turn, return_exceptions=True)

    async def send(self, frame: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self.websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            # RuntimeError: the socket was closed while we were sending
            self.logger.debug(f"Dropping {frame.get('type')} frame: {e}")

    async def _flush(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _schedule(self, frame: dict[str, Any]) -> None:
        task = asyncio.create_task(self.send(frame))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_tool_call(self, name: str, arguments: dict[str, Any]) -> None:
        self._schedule({"type": "tool_call", "tool_name": name})

    def _on_unexpected_exit(self, error: UnexpectedExitError) -> None:
        self._schedule({"type": "status", "status": "disconnected", "message": str(error)})

    def _on_disconnected(self) -> None:
        if self.manager.exit_error is None:
            self._schedule({"type": "status", "status": "disconnected"})
        # A new server means a new tool set; start the conversation over
        if self.engine is not None and not self.engine.is_processing:
            self.engine.reset()

    def _on_connected(self) -> None:
        self._schedule({"type": "status", "status": "connected"})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._turn is not None and not self._turn.done():
            self._turn.cancel()
        await self.wait_idle()
        if self.engine is not None:
            self.engine.close()
            self.engine.reset()
